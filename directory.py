from typing import Iterable, List, Optional

import structlog
from sqlmodel import Session, select

import config
from models import Role, User

logger = structlog.get_logger(__name__)

APPROVER_ROLES = (Role.MANAGER, Role.ADMIN)


class OrgDirectory:
    """Read-only view of the org chart, bound to the caller's session."""

    def __init__(self, session: Session, max_depth: int = config.MANAGER_CHAIN_MAX_DEPTH):
        self.session = session
        self.max_depth = max_depth

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def manager_of(self, user_id: int) -> Optional[int]:
        user = self.session.get(User, user_id)
        return user.manager_id if user else None

    def roster_of(self, company_id: int, roles: Iterable[Role] = APPROVER_ROLES) -> List[User]:
        stmt = (
            select(User)
            .where(User.company_id == company_id)
            .where(User.is_active == True)  # noqa: E712
            .where(User.role.in_(list(roles)))
            .order_by(User.id)
        )
        return list(self.session.exec(stmt).all())

    def manager_chain(self, user_id: int) -> List[User]:
        """Active managers above ``user_id``, nearest first.

        Inactive managers are skipped but the walk continues through them.
        Stops at the top of the chart, on a cycle, or after ``max_depth`` hops.
        """
        chain = []
        visited = {user_id}
        current = self.manager_of(user_id)
        hops = 0
        while current is not None:
            if current in visited:
                logger.warning("manager_chain_cycle", user_id=user_id, repeated=current)
                break
            if hops >= self.max_depth:
                logger.warning("manager_chain_truncated", user_id=user_id, max_depth=self.max_depth)
                break
            visited.add(current)
            hops += 1
            manager = self.session.get(User, current)
            if manager is None:
                break
            if manager.is_active:
                chain.append(manager)
            current = manager.manager_id
        return chain
