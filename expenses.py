"""Draft expenses and the submission unit of work.

Submission freezes the currency conversion, selects the governing rule and
creates the approval steps in one transaction. Any failure along the way
(no rate, broken rule) rolls the whole thing back and the expense stays
DRAFT with no steps.
"""
from dataclasses import dataclass
from datetime import date as dt_date
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from currency import CurrencyConverter, normalize_currency
from db import unit_of_work
from errors import NotFound, Unauthorized, ValidationError, WorkflowClosed
from evaluator import effective_threshold, evaluate, snapshot
from models import ApprovalStep, Company, Expense, ExpenseStatus, RuleType, StepStatus, User, utcnow
from notifications import APPROVED, STEP_CREATED
from outbox import Outbox
from rates import default_rate_source
from rules import RuleMatcher
from workflow import WorkflowBuilder

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("original_amount", "original_currency", "category", "description", "date")


@dataclass
class SubmissionResult:
    expense_id: int
    status: ExpenseStatus
    converted_amount: Decimal
    rate: Decimal
    rate_timestamp: str
    rule_id: Optional[int]
    steps_created: int


def expense_dict(e: Expense) -> dict:
    return {
        "id": e.id,
        "company_id": e.company_id,
        "submitter_id": e.submitter_id,
        "original_amount": e.original_amount,
        "original_currency": e.original_currency,
        "converted_amount": e.converted_amount,
        "conversion_rate": e.conversion_rate,
        "rate_timestamp": e.rate_timestamp.isoformat() if e.rate_timestamp else None,
        "category": e.category,
        "description": e.description,
        "date": e.date.isoformat() if e.date else None,
        "status": e.status.value,
        "submitted_at": e.submitted_at.isoformat() if e.submitted_at else None,
        "rule_id": e.rule_id,
        "rejection_reason": e.rejection_reason,
    }


def lock_expense(s: Session, expense_id: int) -> Optional[Expense]:
    """Load an expense and hold its row lock until the transaction ends."""
    return s.exec(
        select(Expense).where(Expense.id == expense_id).with_for_update().execution_options(populate_existing=True)
    ).first()


def actionable(steps: List[ApprovalStep], rule_type: Optional[RuleType]) -> List[ApprovalStep]:
    """Pending steps an approver can usefully act on right now."""
    pending = [s for s in steps if s.status == StepStatus.PENDING]
    if rule_type != RuleType.SEQUENTIAL or not pending:
        return pending
    first = min(s.sequence_index for s in pending)
    blocked = any(s.status != StepStatus.APPROVED and s.sequence_index < first for s in steps)
    return [] if blocked else [s for s in pending if s.sequence_index == first]


def _validate_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid amount {amount!r}")
    if value <= 0:
        raise ValidationError("amount must be positive")
    return value


def _validate_category(category) -> str:
    category = (category or "").strip()
    if not category:
        raise ValidationError("category is required")
    return category


class ExpenseService:
    def __init__(self, engine: Engine, rate_source=None, audit=None, notifier=None):
        self.engine = engine
        self.rate_source = rate_source or default_rate_source()
        self.audit = audit
        self.notifier = notifier

    def create_draft(self, submitter_id: int, amount, currency: str, category: str,
                     description: Optional[str] = None, date: Optional[dt_date] = None) -> dict:
        with unit_of_work(self.engine) as s:
            submitter = s.get(User, submitter_id)
            if submitter is None or not submitter.is_active:
                raise NotFound(f"submitter {submitter_id} not found")
            expense = Expense(
                company_id=submitter.company_id,
                submitter_id=submitter.id,
                original_amount=_validate_amount(amount),
                original_currency=normalize_currency(currency),
                category=_validate_category(category),
                description=description,
                date=date or dt_date.today(),
            )
            s.add(expense)
            s.flush()
            result = expense_dict(expense)
        logger.info("expense_drafted", expense_id=result["id"], submitter_id=submitter_id)
        return result

    def update_draft(self, expense_id: int, actor_id: int, **changes) -> dict:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"fields not editable: {sorted(unknown)}")
        with unit_of_work(self.engine) as s:
            expense = lock_expense(s, expense_id)
            if expense is None:
                raise NotFound(f"expense {expense_id} not found")
            if expense.submitter_id != actor_id:
                raise Unauthorized("only the submitter can edit an expense")
            if expense.status != ExpenseStatus.DRAFT:
                raise WorkflowClosed(f"expense {expense_id} is {expense.status.value}, not DRAFT")
            if "original_amount" in changes:
                changes["original_amount"] = _validate_amount(changes["original_amount"])
            if "original_currency" in changes:
                changes["original_currency"] = normalize_currency(changes["original_currency"])
            if "category" in changes:
                changes["category"] = _validate_category(changes["category"])
            for field, value in changes.items():
                setattr(expense, field, value)
            s.add(expense)
            s.flush()
            return expense_dict(expense)

    def list_for_user(self, user_id: int) -> List[dict]:
        with Session(self.engine) as s:
            rows = s.exec(select(Expense).where(Expense.submitter_id == user_id).order_by(Expense.id)).all()
            return [expense_dict(e) for e in rows]

    def get(self, expense_id: int) -> dict:
        with Session(self.engine) as s:
            expense = s.get(Expense, expense_id)
            if expense is None:
                raise NotFound(f"expense {expense_id} not found")
            return expense_dict(expense)

    def submit(self, expense_id: int, actor_id: int) -> SubmissionResult:
        outbox = Outbox(self.audit, self.notifier)
        log = logger.bind(expense_id=expense_id, actor_id=actor_id)
        with unit_of_work(self.engine) as s:
            expense = lock_expense(s, expense_id)
            if expense is None:
                raise NotFound(f"expense {expense_id} not found")
            if expense.submitter_id != actor_id:
                raise Unauthorized("only the submitter can submit an expense")
            if expense.status != ExpenseStatus.DRAFT:
                raise WorkflowClosed(f"expense {expense_id} is {expense.status.value}, not DRAFT")
            company = s.get(Company, expense.company_id)

            conversion = CurrencyConverter(s, self.rate_source).convert(
                expense.original_currency, company.currency, expense.original_amount)
            expense.converted_amount = float(conversion.converted_amount)
            expense.conversion_rate = float(conversion.rate)
            expense.rate_timestamp = conversion.timestamp
            expense.submitted_at = utcnow()

            rule = RuleMatcher(s).match(company.id, expense.category, expense.converted_amount)
            steps = []
            if rule is not None:
                expense.rule_id = rule.id
                expense.rule_type = rule.type
                expense.threshold_percent = effective_threshold(rule.type, rule.threshold_percent)
                expense.specific_approver_id = rule.specific_approver_id
                expense.status = ExpenseStatus.WAITING_APPROVAL
                s.add(expense)
                s.flush()
                steps = WorkflowBuilder(s).build(expense, rule)

            status = evaluate(expense.rule_type, snapshot(steps), expense.threshold_percent, expense.specific_approver_id)
            expense.status = status
            s.add(expense)
            s.flush()

            outbox.record("expense", expense.id, "EXPENSE_SUBMITTED", actor_id, {
                "original_amount": expense.original_amount,
                "original_currency": expense.original_currency,
                "converted_amount": expense.converted_amount,
                "conversion_rate": expense.conversion_rate,
                "rate_timestamp": expense.rate_timestamp.isoformat(),
            })
            if rule is None:
                outbox.record("expense", expense.id, "AUTO_APPROVED", actor_id, {"reason": "no approval rule applies"})
            else:
                outbox.record("approval_rule", rule.id, "RULE_APPLIED", actor_id, {
                    "expense_id": expense.id,
                    "rule_type": rule.type.value,
                    "threshold_percent": expense.threshold_percent,
                    "approvers": [st.approver_id for st in steps],
                })
            if status == ExpenseStatus.APPROVED:
                outbox.record("expense", expense.id, "EXPENSE_APPROVED", actor_id, {"reason": "no approval steps"})
                outbox.notify(APPROVED, expense.submitter_id, expense.id)
            for st in actionable(steps, expense.rule_type):
                outbox.notify(STEP_CREATED, st.approver_id, expense.id, step_id=st.id)

            result = SubmissionResult(
                expense_id=expense.id,
                status=status,
                converted_amount=conversion.converted_amount,
                rate=conversion.rate,
                rate_timestamp=conversion.timestamp.isoformat(),
                rule_id=expense.rule_id,
                steps_created=len(steps),
            )
        log.info("expense_submitted", status=result.status.value, rule_id=result.rule_id,
                 steps=result.steps_created, converted_amount=str(result.converted_amount))
        outbox.flush()
        return result
