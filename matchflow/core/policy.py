from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from matchflow.core.settings import StageLimits
from matchflow.core.stages import FailureReason, StageState, StageStatus


class PolicyAction(str, Enum):
    NONE = "none"
    POLL = "poll"
    RESUBMIT = "resubmit"
    FAIL_TIMEOUT = "fail_timeout"
    FAIL_EXHAUSTED = "fail_exhausted"


@dataclass(frozen=True)
class PolicyDecision:
    action: PolicyAction
    reason: Optional[str] = None
    message: Optional[str] = None
    # set when the stage had no start time and was stamped with ``now``
    stamped_started_at: Optional[datetime] = None


def elapsed(state: StageState, now: datetime) -> timedelta:
    if state.started_at is None:
        return timedelta(0)
    return now - state.started_at


def _format_duration(value: timedelta) -> str:
    minutes = int(value.total_seconds() // 60)
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    if rest:
        return f"{hours}h {rest}m"
    return f"{hours} hours"


def evaluate(state: StageState, limits: StageLimits, now: datetime) -> PolicyDecision:
    """Decide what the loop does next with a stage.

    Only ``processing`` stages are acted on. The timeout check comes first so
    a stage that ran out of time fails as ``timeout`` even with retries left.
    """
    if state.status != StageStatus.PROCESSING:
        return PolicyDecision(PolicyAction.NONE)

    if state.started_at is None:
        stamped = now
        if state.retry_count >= limits.max_retries:
            return PolicyDecision(
                PolicyAction.FAIL_EXHAUSTED,
                reason=FailureReason.RETRIES_EXHAUSTED,
                message=f"Gave up after {state.retry_count} attempts",
                stamped_started_at=stamped,
            )
        action = PolicyAction.POLL if state.job_id else PolicyAction.RESUBMIT
        return PolicyDecision(action, stamped_started_at=stamped)

    spent = elapsed(state, now)
    if spent > limits.timeout:
        return PolicyDecision(
            PolicyAction.FAIL_TIMEOUT,
            reason=FailureReason.TIMEOUT,
            message=(
                f"Processing timed out after {_format_duration(spent)} "
                f"(limit {_format_duration(limits.timeout)})"
            ),
        )
    if state.retry_count >= limits.max_retries:
        return PolicyDecision(
            PolicyAction.FAIL_EXHAUSTED,
            reason=FailureReason.RETRIES_EXHAUSTED,
            message=f"Gave up after {state.retry_count} attempts",
        )
    if not state.job_id:
        return PolicyDecision(PolicyAction.RESUBMIT)
    return PolicyDecision(PolicyAction.POLL)
