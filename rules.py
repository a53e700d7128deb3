from typing import List, Optional

import structlog
from sqlalchemy import func, or_
from sqlmodel import Session, select

from errors import ValidationError
from models import ApprovalRule, RuleType

logger = structlog.get_logger(__name__)


def validate_rule(rule: ApprovalRule) -> ApprovalRule:
    """Reject rule configurations that could never be expanded or evaluated."""
    if not (rule.name or "").strip():
        raise ValidationError("rule name is required")
    if rule.threshold_percent is not None and not 0 < rule.threshold_percent <= 100:
        raise ValidationError("threshold_percent must be between 1 and 100")
    if rule.type in (RuleType.SPECIFIC, RuleType.HYBRID) and rule.specific_approver_id is None:
        raise ValidationError(f"{rule.type.value} rule needs a specific_approver_id")
    if rule.min_amount is not None and rule.max_amount is not None and rule.min_amount > rule.max_amount:
        raise ValidationError("min_amount is greater than max_amount")
    if rule.applies_to_category is not None:
        rule.applies_to_category = rule.applies_to_category.strip() or None
    return rule


class RuleMatcher:
    """Picks the one rule that governs an expense.

    Candidates are the company's active rules whose category filter is unset
    or equal to the expense category, and whose amount bounds (inclusive,
    either optional) contain the amount. Highest priority wins; ties go to
    the oldest rule.
    """

    def __init__(self, session: Session):
        self.session = session

    def candidates(self, company_id: int, category: Optional[str], amount: float) -> List[ApprovalRule]:
        stmt = (
            select(ApprovalRule)
            .where(ApprovalRule.company_id == company_id)
            .where(ApprovalRule.is_active == True)  # noqa: E712
            .where(or_(ApprovalRule.min_amount == None, ApprovalRule.min_amount <= amount))  # noqa: E711
            .where(or_(ApprovalRule.max_amount == None, ApprovalRule.max_amount >= amount))  # noqa: E711
        )
        if category:
            stmt = stmt.where(or_(ApprovalRule.applies_to_category == None,  # noqa: E711
                                  func.lower(ApprovalRule.applies_to_category) == category.lower()))
        else:
            stmt = stmt.where(ApprovalRule.applies_to_category == None)  # noqa: E711
        stmt = stmt.order_by(ApprovalRule.priority.desc(), ApprovalRule.created_at, ApprovalRule.id)
        return list(self.session.exec(stmt).all())

    def match(self, company_id: int, category: Optional[str], amount: float) -> Optional[ApprovalRule]:
        found = self.candidates(company_id, category, amount)
        if not found:
            logger.info("no_rule_matched", company_id=company_id, category=category, amount=amount)
            return None
        rule = found[0]
        logger.info("rule_matched", company_id=company_id, rule_id=rule.id, rule_type=rule.type.value,
                    priority=rule.priority, candidates=len(found))
        return rule
