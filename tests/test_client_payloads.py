import unittest
from datetime import datetime, timezone

import requests

from matchflow.core.clients import (
    DetectionClient,
    ExternalServiceError,
    ResultStatus,
    StageNotFoundError,
    StageResult,
    StreamingClient,
    parse_analysis_status,
    parse_detection_status,
    parse_streaming_status,
)
from matchflow.core.stages import StageState, StageStatus, fetch_result, transition

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummyHttpSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


class DetectionPayloadTests(unittest.TestCase):
    def test_url_players_get_sequential_ids(self):
        payload = {
            "player detection status": "completed",
            "players": ["https://cdn/p0.jpg", "https://cdn/p1.jpg"],
        }

        result = parse_detection_status(payload)

        self.assertEqual(result.status, ResultStatus.COMPLETED)
        self.assertEqual(
            result.output,
            [
                {"image_url": "https://cdn/p0.jpg", "player_id": "a"},
                {"image_url": "https://cdn/p1.jpg", "player_id": "b"},
            ],
        )

    def test_success_status_means_completed(self):
        payload = {"status": "success", "players": [{"player_id": "p1", "image_url": "u"}]}

        result = parse_detection_status(payload)

        self.assertEqual(result.status, ResultStatus.COMPLETED)
        self.assertEqual(result.output[0]["player_id"], "p1")

    def test_processing_status_field(self):
        result = parse_detection_status({"processing_status": "processing"})

        self.assertEqual(result.status, ResultStatus.PROCESSING)

    def test_error_status_is_transient(self):
        result = parse_detection_status({"status": "error", "error": "GPU busy"})

        self.assertEqual(result.status, ResultStatus.ERROR)
        self.assertEqual(result.error, "GPU busy")

    def test_error_field_without_status_is_transient(self):
        result = parse_detection_status({"error": "CUDA out of memory"})

        self.assertEqual(result.status, ResultStatus.ERROR)

    def test_explicit_failed_status_fails(self):
        result = parse_detection_status({"status": "failed", "message": "no players visible"})

        self.assertEqual(result.status, ResultStatus.FAILED)
        self.assertEqual(result.error, "no players visible")

    def test_error_status_keeps_stage_recoverable(self):
        before = StageState(status=StageStatus.PROCESSING, job_id="det-1", retry_count=2)

        after = transition(before, parse_detection_status({"status": "error"}), NOW)

        self.assertEqual(after.status, StageStatus.PROCESSING)
        self.assertEqual(after.retry_count, 3)
        self.assertEqual(after.error, "Player detection status error")


class AnalysisAndStreamingPayloadTests(unittest.TestCase):
    def test_completed_analysis_keeps_job_reference(self):
        result = parse_analysis_status(
            {"analysis_status": "completed", "results": {"player_analytics": {}}},
            "ana-1",
        )

        self.assertEqual(result.status, ResultStatus.COMPLETED)
        self.assertEqual(result.output, {"job_id": "ana-1", "results": {"player_analytics": {}}})

    def test_in_progress_analysis_is_processing(self):
        result = parse_analysis_status({"status": "in_progress"}, "ana-1")

        self.assertEqual(result.status, ResultStatus.PROCESSING)

    def test_failed_analysis_serializes_structured_error(self):
        result = parse_analysis_status(
            {"analysis_status": "failed", "error": {"code": "E42"}}, "ana-1"
        )

        self.assertEqual(result.status, ResultStatus.FAILED)
        self.assertEqual(result.error, '{"code": "E42"}')

    def test_completed_download_without_location_has_no_output(self):
        result = parse_streaming_status({"status": "completed"})

        self.assertEqual(result.status, ResultStatus.COMPLETED)
        self.assertIsNone(result.output)

    def test_streaming_not_found(self):
        result = parse_streaming_status({"status": "not_found"})

        self.assertEqual(result.status, ResultStatus.NOT_FOUND)


class HttpErrorMappingTests(unittest.TestCase):
    def test_404_maps_to_not_found(self):
        session = DummyHttpSession(DummyResponse(status_code=404, text="missing"))
        client = DetectionClient("https://ai.example", session=session)

        with self.assertRaises(StageNotFoundError):
            client.poll("det-1")

        result = fetch_result(type("Clients", (), {"detection": client})(), "detection", "det-1")
        self.assertEqual(result.status, ResultStatus.NOT_FOUND)

    def test_server_error_is_transient(self):
        session = DummyHttpSession(DummyResponse(status_code=503, text="busy"))
        client = DetectionClient("https://ai.example", session=session)

        with self.assertRaises(ExternalServiceError) as ctx:
            client.poll("det-1")

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertNotIsInstance(ctx.exception, StageNotFoundError)

    def test_connection_error_is_transient(self):
        session = DummyHttpSession(error=requests.ConnectionError("refused"))
        client = DetectionClient("https://ai.example", session=session)

        clients = type("Clients", (), {"detection": client})()
        result = fetch_result(clients, "detection", "det-1")

        self.assertEqual(result.status, ResultStatus.ERROR)
        self.assertIn("refused", result.error)

    def test_poll_sends_job_id_as_query(self):
        session = DummyHttpSession(
            DummyResponse(payload={"processing_status": "processing"})
        )
        client = DetectionClient("https://ai.example/", session=session)

        self.assertEqual(client.poll("det-7"), StageResult.processing())

        method, url, kwargs = session.calls[0]
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://ai.example/fetch_players/status/")
        self.assertEqual(kwargs["params"], {"job_id": "det-7"})


class StreamingSubmitTests(unittest.TestCase):
    def test_submit_requires_api_key(self):
        client = StreamingClient("https://stream.example", session=DummyHttpSession())

        with self.assertRaises(ExternalServiceError):
            client.submit("https://share.example/v")

    def test_submit_sends_link_and_webhook(self):
        session = DummyHttpSession(DummyResponse(payload={"jobId": "stream-42"}))
        client = StreamingClient(
            "https://stream.example",
            api_key="key-1",
            session=session,
            webhook_url="https://api.example/webhooks/streaming",
        )

        job_id = client.submit("https://share.example/v")

        self.assertEqual(job_id, "stream-42")
        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("POST", "https://stream.example/api/v1/jobs"))
        self.assertEqual(
            kwargs["json"],
            {
                "link": "https://share.example/v",
                "webhookUrl": "https://api.example/webhooks/streaming",
            },
        )
        self.assertEqual(kwargs["headers"]["X-API-Key"], "key-1")

    def test_submit_without_job_id_fails(self):
        session = DummyHttpSession(DummyResponse(payload={"ok": True}))
        client = StreamingClient("https://stream.example", api_key="k", session=session)

        with self.assertRaises(ExternalServiceError):
            client.submit("https://share.example/v")


if __name__ == "__main__":
    unittest.main()
