"""HTTP clients for the streaming (ingestion) and AI services.

Every poll is folded into a :class:`StageResult` here, so the state machine
never sees the upstream field names, which differ between service versions.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from matchflow.core.env import load_env
from matchflow.core.normalizers import normalize_detected_players, normalize_error_text

load_env()

logger = logging.getLogger(__name__)

STREAMING_API_BASE_URL = (
    os.environ.get("STREAMING_API_BASE_URL") or "http://streaming:3000"
).strip()
STREAMING_API_KEY = (os.environ.get("STREAMING_API_KEY") or "").strip()
AI_API_BASE_URL = (os.environ.get("AI_API_BASE_URL") or "http://ai-server:8000").strip()
BACKEND_BASE_URL = (os.environ.get("BACKEND_BASE_URL") or "http://api:8000").strip()
EXTERNAL_HTTP_TIMEOUT_SECONDS = float(
    os.environ.get("EXTERNAL_HTTP_TIMEOUT_SECONDS", "30") or 30
)

PROCESSING_STATES = {"processing", "pending", "queued", "in_progress", "running"}


class ExternalServiceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StageNotFoundError(ExternalServiceError):
    """The remote job is unknown to the service (expired or deleted)."""


class ResultStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class StageResult:
    status: ResultStatus
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def processing(cls) -> "StageResult":
        return cls(ResultStatus.PROCESSING)

    @classmethod
    def completed(cls, output: Any) -> "StageResult":
        return cls(ResultStatus.COMPLETED, output=output)

    @classmethod
    def failed(cls, error: Optional[str]) -> "StageResult":
        return cls(ResultStatus.FAILED, error=error)

    @classmethod
    def not_found(cls, error: Optional[str] = None) -> "StageResult":
        return cls(ResultStatus.NOT_FOUND, error=error)

    @classmethod
    def transient(cls, error: Optional[str]) -> "StageResult":
        return cls(ResultStatus.ERROR, error=error)


class _JsonServiceClient:
    service_name = "external"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = EXTERNAL_HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ExternalServiceError(
                f"{self.service_name} request failed: {exc}"
            ) from exc

        if response.status_code == 404:
            raise StageNotFoundError(
                f"{self.service_name} error: 404 - {response.text[:500]}",
                status_code=404,
            )
        if not response.ok:
            raise ExternalServiceError(
                f"{self.service_name} error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError(
                f"{self.service_name} returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            return {"value": payload}
        return payload


class StreamingClient(_JsonServiceClient):
    """Downloads videos from external links (iCloud, Google Photos, ...)."""

    service_name = "Streaming API"

    def __init__(self, *args, webhook_url: Optional[str] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.webhook_url = webhook_url

    def submit(self, link: str) -> str:
        if not self.api_key:
            raise ExternalServiceError("STREAMING_API_KEY is not configured")
        body: Dict[str, Any] = {"link": link}
        if self.webhook_url:
            body["webhookUrl"] = self.webhook_url
        payload = self._request("POST", "/api/v1/jobs", json=body)
        job_id = payload.get("jobId") or payload.get("job_id")
        if not job_id:
            raise ExternalServiceError("Streaming API response missing jobId")
        return str(job_id)

    def poll(self, job_id: str) -> StageResult:
        payload = self._request("GET", f"/api/v1/jobs/{job_id}")
        return parse_streaming_status(payload)


class DetectionClient(_JsonServiceClient):
    service_name = "Player detection API"

    def submit(self, video_url: str) -> str:
        payload = self._request("POST", "/fetch_players/", json={"video": video_url})
        job_id = payload.get("player_detection_job_id") or payload.get("job_id")
        if not job_id:
            raise ExternalServiceError("Player detection response missing job id")
        return str(job_id)

    def poll(self, job_id: str) -> StageResult:
        payload = self._request(
            "GET", "/fetch_players/status/", params={"job_id": job_id}
        )
        return parse_detection_status(payload)


class AnalysisClient(_JsonServiceClient):
    service_name = "Analysis API"

    def submit(self, video_url: str, assignments: List[Dict[str, Any]]) -> str:
        payload = self._request(
            "POST",
            "/analyses/",
            json={"video_path": video_url, "players_data": assignments},
        )
        job_id = payload.get("job_id") or payload.get("analysis_id")
        if not job_id:
            raise ExternalServiceError("Analysis failed to start")
        return str(job_id)

    def poll(self, job_id: str) -> StageResult:
        payload = self._request("GET", "/analyses/status/", params={"job_id": job_id})
        return parse_analysis_status(payload, job_id)


def parse_streaming_status(payload: Dict[str, Any]) -> StageResult:
    status = str(payload.get("status") or "").lower()
    if status == "completed":
        return StageResult.completed(payload.get("s3Url") or payload.get("s3_url"))
    if status == "failed":
        return StageResult.failed(
            normalize_error_text(payload.get("error")) or "Download failed"
        )
    if status == "not_found":
        return StageResult.not_found("Job expired or not found in streaming service")
    return StageResult.processing()


def parse_detection_status(payload: Dict[str, Any]) -> StageResult:
    # the AI server has used all three keys for the same field
    detection_status = str(
        payload.get("player detection status")
        or payload.get("processing_status")
        or ""
    ).lower()
    status = str(payload.get("status") or "").lower()

    if detection_status in PROCESSING_STATES or status == "processing":
        return StageResult.processing()
    error = normalize_error_text(payload.get("error")) or normalize_error_text(
        payload.get("message")
    )
    if status == "failed" or detection_status == "failed":
        return StageResult.failed(error or "Player detection failed")
    if status == "error" or payload.get("error"):
        # server-side trouble, counted as a retry
        return StageResult.transient(error or "Player detection status error")
    if detection_status == "completed" or status in ("success", "completed"):
        return StageResult.completed(normalize_detected_players(payload.get("players") or []))
    return StageResult.processing()


def parse_analysis_status(payload: Dict[str, Any], job_id: str) -> StageResult:
    status = str(payload.get("analysis_status") or payload.get("status") or "").lower()
    if status == "completed" or (
        status == "success" and not payload.get("analysis_status")
    ):
        results = payload.get("results") or payload.get("result") or {}
        return StageResult.completed({"job_id": job_id, "results": results})
    if status == "failed":
        return StageResult.failed(
            normalize_error_text(payload.get("error"))
            or normalize_error_text(payload.get("message"))
            or "Analysis failed"
        )
    if status == "not_found":
        return StageResult.not_found("Analysis job not found")
    return StageResult.processing()


@dataclass
class StageClients:
    ingestion: StreamingClient
    detection: DetectionClient
    analysis: AnalysisClient


def build_stage_clients() -> StageClients:
    session = requests.Session()
    session.headers.update({"User-Agent": "MatchflowReconciler/1.0"})
    return StageClients(
        ingestion=StreamingClient(
            STREAMING_API_BASE_URL,
            api_key=STREAMING_API_KEY,
            session=session,
            webhook_url=f"{BACKEND_BASE_URL.rstrip('/')}/webhooks/streaming",
        ),
        detection=DetectionClient(AI_API_BASE_URL, session=session),
        analysis=AnalysisClient(AI_API_BASE_URL, session=session),
    )
