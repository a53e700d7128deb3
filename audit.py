from typing import List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models import AuditLog

logger = structlog.get_logger(__name__)


class AuditSink:
    """Fire-and-forget audit trail.

    Each event is written in its own short session, after the workflow
    transaction it describes has committed. A failed write is logged and
    dropped, never raised back into the workflow.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(self, entity: str, entity_id: int, action: str, actor: Optional[int], snapshot: Optional[dict] = None):
        try:
            with Session(self.engine) as s:
                s.add(AuditLog(entity=entity, entity_id=entity_id, action=action, actor_id=actor, snapshot=snapshot,
                               expense_id=entity_id if entity == "expense" else (snapshot or {}).get("expense_id")))
                s.commit()
        except SQLAlchemyError as exc:
            logger.error("audit_write_failed", entity=entity, entity_id=entity_id, action=action, error=str(exc))
            return
        logger.debug("audit_recorded", entity=entity, entity_id=entity_id, action=action, actor=actor)

    def trail(self, entity: str, entity_id: int) -> List[AuditLog]:
        with Session(self.engine) as s:
            stmt = select(AuditLog).where(AuditLog.entity == entity).where(AuditLog.entity_id == entity_id).order_by(AuditLog.id)
            return list(s.exec(stmt).all())

    def expense_trail(self, expense_id: int) -> List[AuditLog]:
        """Every event touching one expense: its own, its steps' and the rule applied to it."""
        with Session(self.engine) as s:
            stmt = select(AuditLog).where(AuditLog.expense_id == expense_id).order_by(AuditLog.id)
            return list(s.exec(stmt).all())
