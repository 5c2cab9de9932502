"""Fire-and-forget notifications on stage transitions.

Delivery is at-least-once at best: a sink failure is logged and never
propagated into the state machine.
"""

import logging
import os
from typing import Any, Dict, Optional, Protocol

import requests

from matchflow.core.env import load_env
from matchflow.core.stages import StageState, StageStatus

load_env()

logger = logging.getLogger(__name__)

NOTIFICATION_WEBHOOK_URL = (os.environ.get("NOTIFICATION_WEBHOOK_URL") or "").strip()
NOTIFICATION_TIMEOUT_SECONDS = float(
    os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", "10") or 10
)

STAGE_RESTARTED = "stage_restarted"
ANALYSIS_ERROR = "analysis_error"

STAGE_EVENTS: Dict[str, Dict[StageStatus, str]] = {
    "ingestion": {
        StageStatus.PROCESSING: "video_download_started",
        StageStatus.COMPLETED: "video_download_complete",
        StageStatus.FAILED: "video_download_failed",
    },
    "detection": {
        StageStatus.PROCESSING: "player_detection_started",
        StageStatus.COMPLETED: "player_detection_complete",
        StageStatus.FAILED: "player_detection_failed",
    },
    "analysis": {
        StageStatus.PROCESSING: "analysis_started",
        StageStatus.COMPLETED: "analysis_completed",
        StageStatus.FAILED: "analysis_failed",
    },
}

STAGE_LABELS = {
    "ingestion": "Video download",
    "detection": "Player detection",
    "analysis": "Match analysis",
}

_STATUS_MESSAGES = {
    StageStatus.PROCESSING: "{label} has started",
    StageStatus.COMPLETED: "{label} is complete",
    StageStatus.FAILED: "{label} failed",
}


class NotificationSink(Protocol):
    def emit(self, owner_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingSink:
    def emit(self, owner_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "NOTIFY owner_id=%s event=%s match_id=%s",
            owner_id,
            event_type,
            payload.get("match_id"),
        )


class HttpNotificationSink:
    def __init__(
        self,
        url: str,
        timeout: float = NOTIFICATION_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def emit(self, owner_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        body = {"owner_id": owner_id, "event_type": event_type, "payload": payload}
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(
                "NOTIFY_FAIL owner_id=%s event=%s error=%s", owner_id, event_type, exc
            )


def build_notification_sink() -> NotificationSink:
    if NOTIFICATION_WEBHOOK_URL:
        return HttpNotificationSink(NOTIFICATION_WEBHOOK_URL)
    return LoggingSink()


def _safe_emit(sink: NotificationSink, owner_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    try:
        sink.emit(owner_id, event_type, payload)
    except Exception:
        logger.exception("NOTIFY_SINK_ERROR owner_id=%s event=%s", owner_id, event_type)


def notify_transition(
    sink: NotificationSink,
    match,
    stage: str,
    before: StageState,
    after: StageState,
) -> Optional[str]:
    """Emit the event for a status change; returns the event type, if any."""
    if before.status == after.status:
        return None
    event_type = STAGE_EVENTS[stage].get(after.status)
    if not event_type:
        return None
    label = STAGE_LABELS[stage]
    payload: Dict[str, Any] = {
        "match_id": match.id,
        "stage": stage,
        "status": after.status.value,
        "job_id": after.job_id,
        "message": _STATUS_MESSAGES[after.status].format(label=label),
    }
    if after.status == StageStatus.FAILED:
        payload["failure_reason"] = after.failure_reason
        payload["error"] = after.error or f"{label} failed"
    _safe_emit(sink, match.owner_id, event_type, payload)
    return event_type


def notify_restart(sink: NotificationSink, match, stage: str, previous_reason: Optional[str]) -> None:
    label = STAGE_LABELS[stage]
    _safe_emit(
        sink,
        match.owner_id,
        STAGE_RESTARTED,
        {
            "match_id": match.id,
            "stage": stage,
            "previous_reason": previous_reason,
            "message": f"{label} was restarted",
        },
    )


def notify_analysis_error(sink: NotificationSink, match, error: str) -> None:
    _safe_emit(
        sink,
        match.owner_id,
        ANALYSIS_ERROR,
        {
            "match_id": match.id,
            "stage": "analysis",
            "error": error,
            "message": "Match analysis could not be started",
        },
    )
