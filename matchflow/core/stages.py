"""Per-stage state machine for a match.

Each of the three stages (ingestion, detection, analysis) moves
``not_started -> processing -> completed | failed``. ``transition`` is pure:
it takes a stage snapshot and a poll result and returns the next snapshot.
``submit`` and ``poll`` wrap it with the remote calls and write the snapshot
back onto the match.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from matchflow.core.clients import (
    ExternalServiceError,
    ResultStatus,
    StageNotFoundError,
    StageResult,
)
from matchflow.core.normalizers import ensure_aware

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason:
    TIMEOUT = "timeout"
    RETRIES_EXHAUSTED = "retries_exhausted"
    JOB_NOT_FOUND = "job_not_found"
    REMOTE_FAILED = "remote_failed"


# failures caused by the services, not by the submitted video
RESETTABLE_REASONS = frozenset(
    {
        FailureReason.TIMEOUT,
        FailureReason.RETRIES_EXHAUSTED,
        FailureReason.JOB_NOT_FOUND,
    }
)

# older analysis service versions report these instead of "processing"
PROCESSING_ALIASES = ("pending", "processing", "in_progress")

OUTPUT_FIELDS = {
    "ingestion": "video_url",
    "detection": "players",
    "analysis": "analysis_result",
}


class StageInputError(ValueError):
    def __init__(self, stage: str, missing: List[str]):
        super().__init__(f"{stage} cannot start, missing: {', '.join(missing)}")
        self.stage = stage
        self.missing = missing


class StageSubmissionError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


@dataclass(frozen=True)
class StageState:
    status: StageStatus
    job_id: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    failure_reason: Optional[str] = None
    output: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.FAILED)


def normalize_stage_status(value: Optional[str]) -> StageStatus:
    if not value:
        return StageStatus.NOT_STARTED
    if value in PROCESSING_ALIASES:
        return StageStatus.PROCESSING
    if value == "not_found":
        return StageStatus.FAILED
    try:
        return StageStatus(value)
    except ValueError:
        return StageStatus.NOT_STARTED


def read_stage(match, stage: str) -> StageState:
    status_value = getattr(match, f"{stage}_status")
    failure_reason = getattr(match, f"{stage}_failure_reason")
    if status_value == "not_found" and not failure_reason:
        failure_reason = FailureReason.JOB_NOT_FOUND
    return StageState(
        status=normalize_stage_status(status_value),
        job_id=getattr(match, f"{stage}_job_id"),
        retry_count=getattr(match, f"{stage}_retry_count") or 0,
        started_at=ensure_aware(getattr(match, f"{stage}_started_at")),
        completed_at=ensure_aware(getattr(match, f"{stage}_completed_at")),
        error=getattr(match, f"{stage}_error"),
        failure_reason=failure_reason,
        output=getattr(match, OUTPUT_FIELDS[stage]),
    )


def write_stage(match, stage: str, state: StageState) -> None:
    setattr(match, f"{stage}_status", state.status.value)
    setattr(match, f"{stage}_job_id", state.job_id)
    setattr(match, f"{stage}_retry_count", state.retry_count)
    setattr(match, f"{stage}_started_at", state.started_at)
    setattr(match, f"{stage}_completed_at", state.completed_at)
    setattr(match, f"{stage}_error", state.error)
    setattr(match, f"{stage}_failure_reason", state.failure_reason)
    setattr(match, OUTPUT_FIELDS[stage], state.output)


def start(state: StageState, job_id: str, now: datetime) -> StageState:
    return replace(
        state,
        status=StageStatus.PROCESSING,
        job_id=job_id,
        retry_count=0,
        started_at=now,
        completed_at=None,
        error=None,
        failure_reason=None,
    )


def fail(state: StageState, reason: str, error: Optional[str], now: datetime) -> StageState:
    return replace(
        state,
        status=StageStatus.FAILED,
        completed_at=now,
        error=error,
        failure_reason=reason,
    )


def transition(state: StageState, result: StageResult, now: datetime) -> StageState:
    if state.is_terminal:
        return state

    if result.status == ResultStatus.COMPLETED:
        if result.output is None:
            # a success without its output is not a completion
            return replace(state, retry_count=state.retry_count + 1)
        return replace(
            state,
            status=StageStatus.COMPLETED,
            output=result.output,
            retry_count=0,
            completed_at=now,
            error=None,
            failure_reason=None,
        )
    if result.status == ResultStatus.FAILED:
        return fail(state, FailureReason.REMOTE_FAILED, result.error, now)
    if result.status == ResultStatus.NOT_FOUND:
        return fail(
            state,
            FailureReason.JOB_NOT_FOUND,
            result.error or "Job expired or not found",
            now,
        )
    if result.status == ResultStatus.ERROR:
        return replace(state, retry_count=state.retry_count + 1, error=result.error)
    return replace(state, retry_count=state.retry_count + 1)


def missing_inputs(match, stage: str) -> List[str]:
    missing: List[str] = []
    if stage == "ingestion":
        if not match.source_link:
            missing.append("source_link")
    elif stage == "detection":
        if normalize_stage_status(match.ingestion_status) != StageStatus.COMPLETED:
            missing.append("ingestion_completed")
        if not match.video_url:
            missing.append("video_url")
    elif stage == "analysis":
        if normalize_stage_status(match.detection_status) != StageStatus.COMPLETED:
            missing.append("detection_completed")
        if not match.players:
            missing.append("players")
        if not match.video_url:
            missing.append("video_url")
        if not match.player_assignments:
            missing.append("player_assignments")
    else:
        raise ValueError(f"Unknown stage: {stage}")
    return missing


def _submit_remote(match, stage: str, clients) -> str:
    try:
        if stage == "ingestion":
            return clients.ingestion.submit(match.source_link)
        if stage == "detection":
            return clients.detection.submit(match.video_url)
        return clients.analysis.submit(match.video_url, list(match.player_assignments or []))
    except ExternalServiceError as exc:
        raise StageSubmissionError(stage, str(exc)) from exc


def fetch_result(clients, stage: str, job_id: str) -> StageResult:
    client = getattr(clients, stage)
    try:
        return client.poll(job_id)
    except StageNotFoundError as exc:
        return StageResult.not_found(str(exc))
    except ExternalServiceError as exc:
        return StageResult.transient(str(exc))


def submit(match, stage: str, clients, now: datetime) -> StageState:
    missing = missing_inputs(match, stage)
    if missing:
        raise StageInputError(stage, missing)
    job_id = _submit_remote(match, stage, clients)
    state = start(read_stage(match, stage), job_id, now)
    write_stage(match, stage, state)
    logger.info("STAGE_SUBMIT_OK stage=%s match_id=%s job_id=%s", stage, match.id, job_id)
    return state


def resubmit(match, stage: str, clients, now: datetime) -> StageState:
    """Fresh submission for a processing stage that never got a job id.

    Consumes one retry whether or not the submission goes through.
    """
    current = read_stage(match, stage)
    consumed = replace(current, retry_count=current.retry_count + 1)
    try:
        job_id = _submit_remote(match, stage, clients)
    except StageSubmissionError as exc:
        logger.warning(
            "STAGE_RESUBMIT_FAIL stage=%s match_id=%s error=%s", stage, match.id, exc
        )
        state = replace(consumed, error=str(exc))
    else:
        state = replace(
            consumed,
            job_id=job_id,
            started_at=consumed.started_at or now,
            error=None,
        )
        logger.info(
            "STAGE_RESUBMIT_OK stage=%s match_id=%s job_id=%s", stage, match.id, job_id
        )
    write_stage(match, stage, state)
    return state


def poll(match, stage: str, clients, now: datetime) -> StageState:
    current = read_stage(match, stage)
    if current.is_terminal or not current.job_id:
        return current
    result = fetch_result(clients, stage, current.job_id)
    state = transition(current, result, now)
    write_stage(match, stage, state)
    logger.info(
        "STAGE_POLL stage=%s match_id=%s job_id=%s result=%s status=%s retries=%s",
        stage,
        match.id,
        current.job_id,
        result.status.value,
        state.status.value,
        state.retry_count,
    )
    return state
