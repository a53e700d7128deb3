"""Approver decisions.

A decision is one transaction: lock the expense row, flip the step from
PENDING with a conditional update, re-read every step of the expense and
re-evaluate. The conditional update is what makes a step decidable at most
once; when two requests race on the same step exactly one sees rowcount 1,
the other gets ``AlreadyDecided``. The expense row lock keeps evaluations of
the same expense from interleaving.
"""
from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from db import unit_of_work
from errors import AlreadyDecided, NotFound, Unauthorized, ValidationError, WorkflowClosed
from evaluator import evaluate, snapshot
from expenses import actionable, lock_expense
from models import ApprovalStep, Expense, ExpenseStatus, StepStatus, utcnow
from notifications import APPROVED, REJECTED, STEP_CREATED
from outbox import Outbox

logger = structlog.get_logger(__name__)

_DECISIONS = {
    "APPROVE": StepStatus.APPROVED,
    "APPROVED": StepStatus.APPROVED,
    "REJECT": StepStatus.REJECTED,
    "REJECTED": StepStatus.REJECTED,
}


@dataclass
class DecisionResult:
    step_id: int
    expense_id: int
    step_status: StepStatus
    expense_status: ExpenseStatus


def parse_decision(decision) -> StepStatus:
    key = decision.value if isinstance(decision, StepStatus) else str(decision or "").strip().upper()
    if key not in _DECISIONS:
        raise ValidationError(f"decision must be approve or reject, got {decision!r}")
    return _DECISIONS[key]


def step_dict(st: ApprovalStep) -> dict:
    return {
        "id": st.id,
        "expense_id": st.expense_id,
        "approver_id": st.approver_id,
        "sequence_index": st.sequence_index,
        "status": st.status.value,
        "action_by": st.action_by,
        "action_at": st.action_at.isoformat() if st.action_at else None,
        "comments": st.comments,
    }


def _load_steps(s: Session, expense_id: int) -> List[ApprovalStep]:
    stmt = (
        select(ApprovalStep)
        .where(ApprovalStep.expense_id == expense_id)
        .order_by(ApprovalStep.sequence_index, ApprovalStep.id)
        .execution_options(populate_existing=True)
    )
    return list(s.exec(stmt).all())


class ApprovalService:
    def __init__(self, engine: Engine, audit=None, notifier=None):
        self.engine = engine
        self.audit = audit
        self.notifier = notifier

    def decide(self, step_id: int, actor_id: int, decision, comments: Optional[str] = None) -> DecisionResult:
        verdict = parse_decision(decision)
        outbox = Outbox(self.audit, self.notifier)
        log = logger.bind(step_id=step_id, actor_id=actor_id, decision=verdict.value)
        with unit_of_work(self.engine) as s:
            step = s.get(ApprovalStep, step_id)
            if step is None:
                raise NotFound(f"approval step {step_id} not found")
            if step.approver_id != actor_id:
                raise Unauthorized(f"user {actor_id} is not the approver of step {step_id}")

            expense = lock_expense(s, step.expense_id)
            # the step may have been decided while we waited for the lock
            s.refresh(step)
            if step.status != StepStatus.PENDING:
                raise AlreadyDecided(f"step {step_id} is already {step.status.value}")
            if expense.status != ExpenseStatus.WAITING_APPROVAL:
                raise WorkflowClosed(f"expense {expense.id} is {expense.status.value}")

            changed = s.connection().execute(
                update(ApprovalStep)
                .where(ApprovalStep.id == step_id)
                .where(ApprovalStep.status == StepStatus.PENDING)
                .values(status=verdict, action_by=actor_id, action_at=utcnow(), comments=comments)
            ).rowcount
            if changed != 1:
                raise AlreadyDecided(f"step {step_id} was decided concurrently")
            s.refresh(step)

            steps = _load_steps(s, expense.id)
            status = evaluate(expense.rule_type, snapshot(steps), expense.threshold_percent, expense.specific_approver_id)

            outbox.record("approval_step", step.id, f"STEP_{verdict.value}", actor_id, {
                "expense_id": expense.id,
                "sequence_index": step.sequence_index,
                "comments": comments,
            })

            if status.is_terminal:
                closed = s.connection().execute(
                    update(Expense)
                    .where(Expense.id == expense.id)
                    .where(Expense.status == ExpenseStatus.WAITING_APPROVAL)
                    .values(status=status, rejection_reason=comments if status == ExpenseStatus.REJECTED else None)
                ).rowcount
                s.refresh(expense)
                if closed == 1:
                    outbox.record("expense", expense.id, f"EXPENSE_{status.value}", actor_id, {
                        "rule_type": expense.rule_type.value if expense.rule_type else None,
                        "steps": [step_dict(st) for st in steps],
                    })
                    outbox.notify(APPROVED if status == ExpenseStatus.APPROVED else REJECTED,
                                  expense.submitter_id, expense.id, step_id=step.id, comments=comments)
                status = expense.status
            else:
                for nxt in actionable(steps, expense.rule_type):
                    if nxt.sequence_index > step.sequence_index:
                        outbox.notify(STEP_CREATED, nxt.approver_id, expense.id, step_id=nxt.id)

            result = DecisionResult(step_id=step.id, expense_id=expense.id, step_status=step.status, expense_status=status)
        log.info("step_decided", expense_id=result.expense_id, expense_status=result.expense_status.value)
        outbox.flush()
        return result

    def pending_for(self, approver_id: int) -> List[dict]:
        with Session(self.engine) as s:
            stmt = (
                select(ApprovalStep, Expense)
                .join(Expense, Expense.id == ApprovalStep.expense_id)
                .where(ApprovalStep.approver_id == approver_id)
                .where(ApprovalStep.status == StepStatus.PENDING)
                .where(Expense.status == ExpenseStatus.WAITING_APPROVAL)
                .order_by(Expense.submitted_at, ApprovalStep.id)
            )
            pending = []
            for step, expense in s.exec(stmt).all():
                if step not in actionable(_load_steps(s, expense.id), expense.rule_type):
                    continue
                pending.append({
                    "step_id": step.id,
                    "sequence_index": step.sequence_index,
                    "expense_id": expense.id,
                    "submitter_id": expense.submitter_id,
                    "category": expense.category,
                    "original_amount": expense.original_amount,
                    "original_currency": expense.original_currency,
                    "converted_amount": expense.converted_amount,
                })
            return pending

    def history(self, expense_id: int) -> List[dict]:
        with Session(self.engine) as s:
            if s.get(Expense, expense_id) is None:
                raise NotFound(f"expense {expense_id} not found")
            return [step_dict(st) for st in _load_steps(s, expense_id)]
