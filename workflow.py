"""Expand a governing rule into approval steps for one expense.

Each rule type has its own builder returning ``(approver, sequence_index)``
pairs. ``WorkflowBuilder.build`` dedupes approvers, creates the PENDING steps
in the caller's session and leaves committing to the caller, so the steps land
in the same transaction that moves the expense to WAITING_APPROVAL.
"""
from typing import List, Tuple

import structlog
from sqlmodel import Session

from directory import OrgDirectory
from errors import InvalidRuleConfig
from models import ApprovalRule, ApprovalStep, Expense, RuleType, User

logger = structlog.get_logger(__name__)

Assignment = Tuple[User, int]


def _sequential(rule: ApprovalRule, expense: Expense, directory: OrgDirectory) -> List[Assignment]:
    return [(manager, i) for i, manager in enumerate(directory.manager_chain(expense.submitter_id))]


def _parallel(rule: ApprovalRule, expense: Expense, directory: OrgDirectory) -> List[Assignment]:
    return [(u, 0) for u in directory.roster_of(expense.company_id) if u.id != expense.submitter_id]


def _specific_approver(rule: ApprovalRule, expense: Expense, directory: OrgDirectory) -> User:
    if rule.specific_approver_id is None:
        raise InvalidRuleConfig(f"rule {rule.id} has no specific approver", rule_id=rule.id)
    approver = directory.get_user(rule.specific_approver_id)
    if approver is None or not approver.is_active:
        raise InvalidRuleConfig(f"specific approver of rule {rule.id} is missing or inactive", rule_id=rule.id)
    if approver.company_id != expense.company_id:
        raise InvalidRuleConfig(f"specific approver of rule {rule.id} belongs to another company", rule_id=rule.id)
    if approver.id == expense.submitter_id:
        raise InvalidRuleConfig(f"specific approver of rule {rule.id} cannot approve their own expense", rule_id=rule.id)
    return approver


def _specific(rule: ApprovalRule, expense: Expense, directory: OrgDirectory) -> List[Assignment]:
    return [(_specific_approver(rule, expense, directory), 0)]


def _hybrid(rule: ApprovalRule, expense: Expense, directory: OrgDirectory) -> List[Assignment]:
    approver = _specific_approver(rule, expense, directory)
    cohort = [(u, 1) for u, _ in _parallel(rule, expense, directory) if u.id != approver.id]
    return [(approver, 0)] + cohort


BUILDERS = {
    RuleType.SEQUENTIAL: _sequential,
    RuleType.PARALLEL: _parallel,
    # same approvers as PARALLEL, only the evaluation differs
    RuleType.PERCENTAGE: _parallel,
    RuleType.SPECIFIC: _specific,
    RuleType.HYBRID: _hybrid,
}

_missing = set(RuleType) - set(BUILDERS)
if _missing:
    raise ImportError(f"no workflow builder for rule types: {sorted(m.value for m in _missing)}")


class WorkflowBuilder:
    def __init__(self, session: Session, directory: OrgDirectory = None):
        self.session = session
        self.directory = directory or OrgDirectory(session)

    def build(self, expense: Expense, rule: ApprovalRule) -> List[ApprovalStep]:
        assignments = BUILDERS[rule.type](rule, expense, self.directory)
        steps = []
        seen = set()
        for approver, index in assignments:
            if approver.id in seen:
                continue
            seen.add(approver.id)
            steps.append(ApprovalStep(expense_id=expense.id, approver_id=approver.id, sequence_index=index))
        self.session.add_all(steps)
        self.session.flush()
        logger.info("workflow_built", expense_id=expense.id, rule_id=rule.id, rule_type=rule.type.value,
                    steps=len(steps), approvers=[s.approver_id for s in steps])
        return steps
