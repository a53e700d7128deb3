"""Overall workflow status from a snapshot of approval steps.

``evaluate`` is pure: same rule parameters and same steps, same answer. The
caller is responsible for reading a consistent snapshot and writing the
result.
"""
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import config
from models import ExpenseStatus, RuleType, StepStatus


@dataclass(frozen=True)
class StepView:
    approver_id: int
    sequence_index: int
    status: StepStatus


def snapshot(steps) -> Tuple[StepView, ...]:
    return tuple(StepView(s.approver_id, s.sequence_index, StepStatus(s.status)) for s in steps)


def _threshold_met(steps: Sequence[StepView], threshold: int) -> bool:
    if not steps:
        return True
    approved = sum(1 for s in steps if s.status == StepStatus.APPROVED)
    # integer form of approved / total * 100 >= threshold
    return approved * 100 >= threshold * len(steps)


def _sequential(steps, threshold, specific_approver_id):
    for step in sorted(steps, key=lambda s: s.sequence_index):
        if step.status != StepStatus.APPROVED:
            return ExpenseStatus.WAITING_APPROVAL
    return ExpenseStatus.APPROVED


def _percentage(steps, threshold, specific_approver_id):
    return ExpenseStatus.APPROVED if _threshold_met(steps, threshold) else ExpenseStatus.WAITING_APPROVAL


def _specific(steps, threshold, specific_approver_id):
    if not steps or any(s.status == StepStatus.APPROVED for s in steps):
        return ExpenseStatus.APPROVED
    return ExpenseStatus.WAITING_APPROVAL


def _hybrid(steps, threshold, specific_approver_id):
    if specific_approver_id is not None:
        designated = [s for s in steps if s.approver_id == specific_approver_id]
    else:
        designated = [s for s in steps if s.sequence_index == 0]
    if any(s.status == StepStatus.APPROVED for s in designated):
        return ExpenseStatus.APPROVED
    rest = [s for s in steps if s not in designated]
    if not rest:
        # the designated approver is the only gate
        return ExpenseStatus.APPROVED if not designated else ExpenseStatus.WAITING_APPROVAL
    return _percentage(rest, threshold, specific_approver_id)


_HANDLERS = {
    RuleType.SEQUENTIAL: _sequential,
    RuleType.PARALLEL: _percentage,
    RuleType.PERCENTAGE: _percentage,
    RuleType.SPECIFIC: _specific,
    RuleType.HYBRID: _hybrid,
}

_THRESHOLD_TYPES = (RuleType.PARALLEL, RuleType.PERCENTAGE, RuleType.HYBRID)

_missing = set(RuleType) - set(_HANDLERS)
if _missing:
    raise ImportError(f"no status handler for rule types: {sorted(m.value for m in _missing)}")


def effective_threshold(rule_type: Optional[RuleType], threshold_percent: Optional[int]) -> Optional[int]:
    """The threshold a rule actually evaluates with; unset falls back to the per-type default."""
    if threshold_percent is not None or rule_type not in _THRESHOLD_TYPES:
        return threshold_percent
    if RuleType(rule_type) == RuleType.HYBRID:
        return config.HYBRID_DEFAULT_THRESHOLD_PERCENT
    return config.DEFAULT_THRESHOLD_PERCENT


def evaluate(rule_type: Optional[RuleType], steps: Sequence[StepView], threshold_percent: Optional[int] = None,
             specific_approver_id: Optional[int] = None) -> ExpenseStatus:
    if any(s.status == StepStatus.REJECTED for s in steps):
        return ExpenseStatus.REJECTED
    if rule_type is None:
        # no governing rule, nothing to wait for
        return ExpenseStatus.APPROVED
    threshold = effective_threshold(rule_type, threshold_percent)
    return _HANDLERS[RuleType(rule_type)](tuple(steps), threshold, specific_approver_id)
