"""Corrections applied when a user opens a match.

Two cases are repaired without taking a lease:

- a ``processing`` stage whose retry counter hit the limit gets a fresh
  counter and start time, so the loop keeps polling instead of failing it;
- a ``failed`` stage that failed for a service-side reason (timeout,
  exhausted retries, expired job) goes back to ``processing`` with no job id,
  so the next pass submits it again.

These race with the reconciliation loop; the worst case is a double reset.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from matchflow.core.notifications import NotificationSink, notify_restart
from matchflow.core.settings import STAGES, StageLimits
from matchflow.core.stages import (
    RESETTABLE_REASONS,
    StageStatus,
    missing_inputs,
    read_stage,
    write_stage,
)

logger = logging.getLogger(__name__)


def apply_read_time_corrections(
    match,
    limits: Dict[str, StageLimits],
    now: datetime,
    sink: Optional[NotificationSink] = None,
) -> List[str]:
    """Returns the stages that were reset; the caller commits."""
    reset: List[str] = []
    for stage in STAGES:
        state = read_stage(match, stage)

        if state.status == StageStatus.PROCESSING:
            if state.retry_count < limits[stage].max_retries:
                continue
            write_stage(match, stage, replace(state, retry_count=0, started_at=now))
            logger.info(
                "READ_RESET_RETRIES stage=%s match_id=%s retries=%s",
                stage,
                match.id,
                state.retry_count,
            )
            previous_reason = "retry_limit_reached"

        elif state.status == StageStatus.FAILED:
            if state.failure_reason not in RESETTABLE_REASONS:
                continue
            if missing_inputs(match, stage):
                continue
            write_stage(
                match,
                stage,
                replace(
                    state,
                    status=StageStatus.PROCESSING,
                    job_id=None,
                    retry_count=0,
                    started_at=now,
                    completed_at=None,
                    error=None,
                    failure_reason=None,
                ),
            )
            logger.info(
                "READ_RESET_FAILED stage=%s match_id=%s reason=%s",
                stage,
                match.id,
                state.failure_reason,
            )
            previous_reason = state.failure_reason

        else:
            continue

        reset.append(stage)
        if sink is not None:
            notify_restart(sink, match, stage, previous_reason)
    return reset
