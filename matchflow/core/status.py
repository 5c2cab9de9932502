from typing import Any, Dict, List

from matchflow.core.normalizers import isoformat_or_none
from matchflow.core.settings import STAGES
from matchflow.core.stages import StageStatus, read_stage

# upload 25%, player detection 25%, analysis 50%
STAGE_WEIGHTS = {"ingestion": 25, "detection": 25, "analysis": 50}

FAILED_LABELS = {
    "ingestion": "upload",
    "detection": "player_detection",
    "analysis": "analysis",
}

MESSAGES = {
    "awaiting_video": "Waiting for video upload",
    "downloading": "Downloading video from link...",
    "upload_complete": "Video uploaded successfully",
    "download_complete": "Video downloaded successfully",
    "detecting_players": "Detecting players in video...",
    "awaiting_analysis": "Ready for analysis",
    "analyzing": "Analyzing gameplay...",
    "completed": "Analysis complete!",
}


def upload_path(match) -> str:
    if match.video_key:
        return "direct_upload"
    if match.source_link:
        return "link_upload"
    if match.video_url:
        return "unknown"
    return "none"


def _current_stage(states: Dict[str, Any], path: str) -> str:
    ingestion = states["ingestion"].status
    detection = states["detection"].status
    analysis = states["analysis"].status

    if analysis == StageStatus.COMPLETED:
        return "completed"
    if analysis == StageStatus.PROCESSING:
        return "analyzing"
    if detection == StageStatus.PROCESSING:
        return "detecting_players"
    if detection == StageStatus.COMPLETED:
        return "awaiting_analysis"
    if ingestion == StageStatus.PROCESSING:
        return "downloading"
    if ingestion == StageStatus.COMPLETED:
        return "upload_complete" if path == "direct_upload" else "download_complete"
    return "awaiting_video"


def _progress(states: Dict[str, Any], stage_name: str, failed: List[str]) -> int:
    if stage_name == "completed":
        return 100
    if failed:
        if "analysis" in failed:
            return 66
        if "player_detection" in failed:
            return 33
        return 10

    progress = 0
    for stage in STAGES:
        weight = STAGE_WEIGHTS[stage]
        status = states[stage].status
        if status == StageStatus.COMPLETED:
            progress += weight
        elif status == StageStatus.PROCESSING:
            # half a stage while it runs; downloads count a flat 10%
            progress += 10 if stage == "ingestion" else weight // 2
    return min(progress, 99)


def compute_processing_status(match) -> Dict[str, Any]:
    states = {stage: read_stage(match, stage) for stage in STAGES}
    path = upload_path(match)
    failed = [
        FAILED_LABELS[stage]
        for stage in STAGES
        if states[stage].status == StageStatus.FAILED
    ]

    if failed:
        stage_name = "failed"
        message = f"Processing failed at {', '.join(failed)}"
    else:
        stage_name = _current_stage(states, path)
        message = MESSAGES.get(stage_name, "Processing...")

    return {
        "overall": {
            "stage": stage_name,
            "progress": _progress(states, stage_name, failed),
            "message": message,
            "is_complete": stage_name == "completed",
            "has_failed": bool(failed),
            "failed_stages": failed,
        },
        "upload_path": path,
        "stages": {
            stage: {
                "status": state.status.value,
                "job_id": state.job_id,
                "retry_count": state.retry_count,
                "started_at": isoformat_or_none(state.started_at),
                "completed_at": isoformat_or_none(state.completed_at),
                "error": state.error,
                "failure_reason": state.failure_reason,
            }
            for stage, state in states.items()
        },
        "players_found": len(match.players or []),
        "video": {"available": bool(match.video_url), "url": match.video_url},
    }
