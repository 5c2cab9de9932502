import hmac
import logging
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from matchflow.core.deps import get_db
from matchflow.core.models import Match
from matchflow.core.normalizers import isoformat_or_none, utc_now
from matchflow.core.recovery import apply_read_time_corrections
from matchflow.core.settings import STAGES, load_stage_limits
from matchflow.core.stages import (
    StageInputError,
    StageStatus,
    StageSubmissionError,
    normalize_stage_status,
    read_stage,
    write_stage,
)
from matchflow.core.status import compute_processing_status
from matchflow.core.storage import S3_BUCKET, StorageError, object_exists, presign_video_url
from matchflow.schemas import (
    AnalysisRequest,
    LinkSubmission,
    MatchCreate,
    StreamingWebhookPayload,
)
from matchflow.workers.reconciler import (
    Reconciler,
    StartOutcome,
    WebhookOutcome,
    get_reconciler,
)

logger = logging.getLogger(__name__)

router = APIRouter()

WEBHOOK_API_KEY = (os.environ.get("WEBHOOK_API_KEY") or "").strip()

STAGE_LIMITS = load_stage_limits()


def build_meta(request: Request | None = None) -> dict:
    request_id = getattr(request.state, "request_id", None) if request else None
    return {
        "request_id": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def ok_response(data: dict, request: Request | None = None) -> dict:
    return {"ok": True, "data": data, "meta": build_meta(request)}


def error_detail(code: str, message: str, details: dict | None = None) -> dict:
    payload = {"code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


def _get_match_or_404(db: Session, match_id: str) -> Match:
    match = db.get(Match, match_id)
    if not match:
        raise HTTPException(
            status_code=404,
            detail=error_detail("MATCH_NOT_FOUND", "Match not found"),
        )
    return match


def serialize_match(match: Match) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": match.id,
        "owner_id": match.owner_id,
        "source_link": match.source_link,
        "video_url": match.video_url,
        "players": match.players or [],
        "player_assignments": match.player_assignments,
        "creator_player_index": match.creator_player_index,
        "analysis_result": match.analysis_result,
        "created_at": isoformat_or_none(match.created_at),
        "updated_at": isoformat_or_none(match.updated_at),
        "processing_status": compute_processing_status(match),
    }
    for stage in STAGES:
        payload[f"{stage}_status"] = read_stage(match, stage).status.value
    return payload


def _raise_submission_error(exc: StageSubmissionError, match_id: str) -> None:
    raise HTTPException(
        status_code=502,
        detail=error_detail(
            "STAGE_SUBMISSION_FAILED",
            str(exc),
            {"match_id": match_id, "stage": exc.stage},
        ),
    ) from exc


def _raise_busy(match_id: str, stage: str) -> None:
    raise HTTPException(
        status_code=409,
        detail=error_detail(
            "STAGE_BUSY",
            "This match is being processed right now, try again shortly.",
            {"match_id": match_id, "stage": stage},
        ),
    )


@router.post("/matches")
def create_match(
    payload: MatchCreate,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
):
    match = Match(
        id=str(uuid4()),
        owner_id=payload.owner_id,
        source_link=payload.source_link,
        ingestion_status=StageStatus.NOT_STARTED.value,
        detection_status=StageStatus.NOT_STARTED.value,
        analysis_status=StageStatus.NOT_STARTED.value,
        ingestion_retry_count=0,
        detection_retry_count=0,
        analysis_retry_count=0,
        creator_player_index=0,
    )

    if payload.video_key:
        bucket = payload.video_bucket or S3_BUCKET
        if not bucket:
            raise HTTPException(
                status_code=400,
                detail=error_detail(
                    "VIDEO_BUCKET_MISSING",
                    "video_bucket is required when using video_key.",
                ),
            )
        try:
            if not object_exists(bucket, payload.video_key):
                raise HTTPException(
                    status_code=400,
                    detail=error_detail(
                        "VIDEO_NOT_FOUND",
                        "No uploaded video found for video_key.",
                        {"bucket": bucket, "video_key": payload.video_key},
                    ),
                )
            video_url = presign_video_url(bucket, payload.video_key)
        except StorageError as exc:
            raise HTTPException(
                status_code=502,
                detail=error_detail("STORAGE_ERROR", str(exc)),
            ) from exc
        now = utc_now()
        # a direct upload is already ingested
        match.video_bucket = bucket
        match.video_key = payload.video_key
        write_stage(
            match,
            "ingestion",
            replace(
                read_stage(match, "ingestion"),
                status=StageStatus.COMPLETED,
                started_at=now,
                completed_at=now,
                output=video_url,
            ),
        )

    db.add(match)
    db.commit()
    logger.info("MATCH_CREATED match_id=%s owner_id=%s", match.id, match.owner_id)

    outcome: Optional[StartOutcome] = None
    if match.video_url:
        outcome = reconciler.start_stage(match.id, "detection")
    elif match.source_link:
        try:
            outcome = reconciler.start_stage(match.id, "ingestion", raise_errors=True)
        except StageSubmissionError as exc:
            _raise_submission_error(exc, match.id)

    db.refresh(match)
    data = serialize_match(match)
    data["start_outcome"] = outcome.value if outcome else None
    return ok_response(data, request)


@router.post("/matches/{match_id}/link")
def submit_link(
    match_id: str,
    payload: LinkSubmission,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
):
    match = _get_match_or_404(db, match_id)
    ingestion = read_stage(match, "ingestion")
    if ingestion.status in (StageStatus.PROCESSING, StageStatus.COMPLETED):
        raise HTTPException(
            status_code=409,
            detail=error_detail(
                "INGESTION_ALREADY_STARTED",
                "A video is already attached to this match.",
                {"ingestion_status": ingestion.status.value},
            ),
        )
    match.source_link = payload.link
    db.commit()

    try:
        outcome = reconciler.start_stage(match_id, "ingestion", raise_errors=True)
    except StageSubmissionError as exc:
        _raise_submission_error(exc, match_id)
    if outcome == StartOutcome.BUSY:
        _raise_busy(match_id, "ingestion")

    db.refresh(match)
    data = serialize_match(match)
    data["start_outcome"] = outcome.value
    return ok_response(data, request)


@router.get("/matches/{match_id}")
def get_match(
    match_id: str,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
):
    match = _get_match_or_404(db, match_id)
    restarted = apply_read_time_corrections(
        match, STAGE_LIMITS, utc_now(), sink=reconciler.sink
    )
    if restarted:
        db.commit()
        db.refresh(match)
    data = serialize_match(match)
    data["restarted_stages"] = restarted
    return ok_response(data, request)


@router.post("/matches/{match_id}/analysis")
def request_analysis(
    match_id: str,
    payload: AnalysisRequest,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
):
    match = _get_match_or_404(db, match_id)
    analysis_status = normalize_stage_status(match.analysis_status)
    if analysis_status in (StageStatus.PROCESSING, StageStatus.COMPLETED):
        raise HTTPException(
            status_code=409,
            detail=error_detail(
                "ANALYSIS_ALREADY_STARTED",
                "Analysis has already been requested for this match.",
                {"analysis_status": analysis_status.value},
            ),
        )

    match.player_assignments = payload.assignments_payload()
    match.creator_player_index = payload.creator_player_index
    match.analysis_submit_failures = 0
    db.commit()

    missing: list[str] = []
    try:
        outcome = reconciler.start_stage(match_id, "analysis", raise_errors=True)
    except StageInputError as exc:
        # assignments are stored; the loop submits once detection completes
        outcome = None
        missing = exc.missing
    except StageSubmissionError as exc:
        _raise_submission_error(exc, match_id)
    if outcome == StartOutcome.BUSY:
        _raise_busy(match_id, "analysis")

    db.refresh(match)
    data = serialize_match(match)
    data["start_outcome"] = outcome.value if outcome else "waiting_for_inputs"
    data["missing_inputs"] = missing
    return ok_response(data, request)


@router.post("/webhooks/streaming")
def streaming_webhook(
    payload: StreamingWebhookPayload,
    request: Request,
    x_api_key: str | None = Header(default=None),
    reconciler: Reconciler = Depends(get_reconciler),
):
    if WEBHOOK_API_KEY and not hmac.compare_digest(x_api_key or "", WEBHOOK_API_KEY):
        raise HTTPException(
            status_code=401,
            detail=error_detail("INVALID_API_KEY", "Invalid or missing API key"),
        )
    logger.info(
        "WEBHOOK_RECEIVED job_id=%s status=%s", payload.job_id, payload.status
    )
    outcome = reconciler.handle_ingestion_webhook(
        payload.job_id, payload.status, payload.s3_url, payload.error
    )
    if outcome == WebhookOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=404,
            detail=error_detail(
                "JOB_NOT_FOUND",
                "No match found for this streaming job",
                {"job_id": payload.job_id},
            ),
        )
    if outcome == WebhookOutcome.REJECTED:
        raise HTTPException(
            status_code=400,
            detail=error_detail(
                "MISSING_VIDEO_URL",
                "A completed job must report s3Url",
                {"job_id": payload.job_id},
            ),
        )
    return ok_response({"job_id": payload.job_id, "outcome": outcome.value}, request)


@router.get("/reconciler/status")
def reconciler_status(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    return ok_response(reconciler.status(), request)
