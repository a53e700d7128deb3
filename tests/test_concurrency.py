"""Races between approvers, run on real threads against a file-backed SQLite database."""
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlmodel import select

from db import get_session
from errors import AlreadyDecided, WorkflowClosed
from models import ApprovalStep, AuditLog, Expense, ExpenseStatus, RuleType, StepStatus


def race(*calls):
    """Start every call at the same moment; return each outcome or the exception it raised."""
    barrier = Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except (AlreadyDecided, WorkflowClosed) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def steps_by_approver(engine, expense_id):
    with get_session(engine) as s:
        rows = s.exec(select(ApprovalStep).where(ApprovalStep.expense_id == expense_id)).all()
        return {st.approver_id: st.id for st in rows}


def terminal_events(engine, expense_id):
    with get_session(engine) as s:
        stmt = (select(AuditLog).where(AuditLog.entity == "expense").where(AuditLog.entity_id == expense_id)
                .where(AuditLog.action.in_(["EXPENSE_APPROVED", "EXPENSE_REJECTED"])))
        return [log.action for log in s.exec(stmt)]


@pytest.mark.parametrize("round_", range(5))
def test_same_step_decided_once(engine, org, make_rule, submitted, approvals, round_):
    make_rule(RuleType.PERCENTAGE, threshold_percent=100)
    result = submitted()
    step_id = steps_by_approver(engine, result.expense_id)[org.admin]

    outcomes = race(
        lambda: approvals.decide(step_id, org.admin, "approve"),
        lambda: approvals.decide(step_id, org.admin, "reject", "changed my mind"),
    )

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], AlreadyDecided)

    with get_session(engine) as s:
        step = s.get(ApprovalStep, step_id)
        assert step.status == winners[0].step_status
        decided = s.exec(select(ApprovalStep).where(ApprovalStep.expense_id == result.expense_id)
                         .where(ApprovalStep.status != StepStatus.PENDING)).all()
        assert len(decided) == 1


@pytest.mark.parametrize("round_", range(3))
def test_parallel_decisions_close_exactly_once(engine, org, make_rule, submitted, approvals, round_):
    make_rule(RuleType.PERCENTAGE, threshold_percent=60)
    result = submitted()
    steps = steps_by_approver(engine, result.expense_id)
    approvals.decide(steps[org.admin], org.admin, "approve")
    approvals.decide(steps[org.ceo], org.ceo, "approve")

    outcomes = race(*[
        (lambda uid=uid: approvals.decide(steps[uid], uid, "approve"))
        for uid in (org.director, org.manager, org.peer)
    ])

    closed = [o for o in outcomes if not isinstance(o, Exception) and o.expense_status == ExpenseStatus.APPROVED]
    assert len(closed) == 1
    assert all(isinstance(o, WorkflowClosed) for o in outcomes if o not in closed)

    with get_session(engine) as s:
        assert s.get(Expense, result.expense_id).status == ExpenseStatus.APPROVED
        approved = s.exec(select(ApprovalStep).where(ApprovalStep.expense_id == result.expense_id)
                          .where(ApprovalStep.status == StepStatus.APPROVED)).all()
        # third approval closed it; the rest were turned away
        assert len(approved) == 3
    assert terminal_events(engine, result.expense_id) == ["EXPENSE_APPROVED"]


@pytest.mark.parametrize("round_", range(3))
def test_reject_and_approve_race_settles_on_one_outcome(engine, org, make_rule, submitted, approvals, round_):
    make_rule(RuleType.PERCENTAGE, threshold_percent=60)
    result = submitted()
    steps = steps_by_approver(engine, result.expense_id)
    approvals.decide(steps[org.admin], org.admin, "approve")
    approvals.decide(steps[org.ceo], org.ceo, "approve")

    outcomes = race(
        lambda: approvals.decide(steps[org.director], org.director, "reject", "too expensive"),
        lambda: approvals.decide(steps[org.peer], org.peer, "approve"),
    )

    settled = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(settled) == 1
    assert isinstance([o for o in outcomes if isinstance(o, Exception)][0], WorkflowClosed)

    with get_session(engine) as s:
        final = s.get(Expense, result.expense_id).status
    assert final == settled[0].expense_status
    assert final in (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED)
    assert terminal_events(engine, result.expense_id) == [f"EXPENSE_{final.value}"]
