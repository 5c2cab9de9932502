import tempfile
import threading
import types
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from matchflow.core.clients import ExternalServiceError, StageResult
from matchflow.core.db import Base, make_engine, make_session_factory
from matchflow.core.models import Match
from matchflow.core.recovery import apply_read_time_corrections
from matchflow.core.settings import ReconcilerSettings, StageLimits
from matchflow.workers.reconciler import Reconciler, StartOutcome, WebhookOutcome

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

LIMITS = {
    "ingestion": StageLimits(timeout=timedelta(hours=6), max_retries=720),
    "detection": StageLimits(timeout=timedelta(hours=2), max_retries=50),
    "analysis": StageLimits(timeout=timedelta(hours=48), max_retries=5760),
}


class FakeStageClient:
    def __init__(self, job_id, poll_results=None, submit_error=None):
        self.job_id = job_id
        self.poll_results = poll_results or {}
        self.submit_error = submit_error
        self.submitted = []
        self.polled = []
        self._lock = threading.Lock()

    def submit(self, *args):
        with self._lock:
            self.submitted.append(args)
        if self.submit_error:
            raise self.submit_error
        return self.job_id

    def poll(self, job_id):
        with self._lock:
            self.polled.append(job_id)
        result = self.poll_results.get(job_id, StageResult.processing())
        if isinstance(result, Exception):
            raise result
        return result


class BlockingStageClient(FakeStageClient):
    def __init__(self, job_id):
        super().__init__(job_id)
        self.entered = threading.Event()
        self.release = threading.Event()

    def poll(self, job_id):
        self.entered.set()
        self.release.wait(timeout=30)
        return StageResult.processing()


class RecordingSink:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def emit(self, owner_id, event_type, payload):
        with self._lock:
            self.events.append((owner_id, event_type, payload))

    def types(self):
        return [event_type for _, event_type, _ in self.events]


class ReconcilerFlowTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(self.tmpdir.name) / "matchflow.db"
        self.engine = make_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.sink = RecordingSink()
        self.clients = types.SimpleNamespace(
            ingestion=FakeStageClient("stream-1"),
            detection=FakeStageClient("det-1"),
            analysis=FakeStageClient("ana-1"),
        )
        self.reconciler = self._make_reconciler()

    def tearDown(self):
        self.reconciler.shutdown()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _make_reconciler(self):
        settings = ReconcilerSettings(
            interval_seconds=30,
            max_workers=2,
            lease_ttl_seconds=600,
            limits=LIMITS,
            max_submit_failures=3,
        )
        return Reconciler(
            self.session_factory,
            self.clients,
            self.sink,
            settings,
            clock=lambda: NOW,
        )

    def add_match(self, match_id, **fields):
        values = {
            "id": match_id,
            "owner_id": "user-1",
            "ingestion_status": "not_started",
            "detection_status": "not_started",
            "analysis_status": "not_started",
        }
        values.update(fields)
        db = self.session_factory()
        try:
            db.add(Match(**values))
            db.commit()
        finally:
            db.close()

    def load(self, match_id) -> Match:
        db = self.session_factory()
        try:
            return db.get(Match, match_id)
        finally:
            db.close()

    def test_ingested_match_gets_detection_submitted(self):
        self.add_match(
            "m1",
            ingestion_status="completed",
            video_url="https://cdn/m1.mp4",
        )

        self.assertTrue(self.reconciler.run_tick())

        match = self.load("m1")
        self.assertEqual(match.detection_status, "processing")
        self.assertEqual(match.detection_job_id, "det-1")
        self.assertEqual(self.clients.detection.submitted, [("https://cdn/m1.mp4",)])
        self.assertEqual(self.sink.types(), ["player_detection_started"])
        self.assertEqual(self.reconciler.leases.active(), [])

    def test_ingestion_completion_chains_detection(self):
        self.clients.ingestion.poll_results["stream-1"] = StageResult.completed(
            "https://s3/m1.mp4"
        )
        self.add_match(
            "m1",
            source_link="https://share.example/m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )

        self.assertTrue(self.reconciler.run_tick())

        match = self.load("m1")
        self.assertEqual(match.ingestion_status, "completed")
        self.assertEqual(match.video_url, "https://s3/m1.mp4")
        self.assertEqual(match.detection_status, "processing")
        self.assertEqual(len(self.clients.detection.submitted), 1)
        self.assertEqual(self.sink.types().count("video_download_complete"), 1)
        self.assertEqual(self.sink.types().count("player_detection_started"), 1)

    def test_duplicate_completed_webhook_submits_detection_once(self):
        self.add_match(
            "m1",
            source_link="https://share.example/m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )

        first = self.reconciler.handle_ingestion_webhook(
            "stream-1", "completed", "https://s3/m1.mp4"
        )
        second = self.reconciler.handle_ingestion_webhook(
            "stream-1", "completed", "https://s3/m1.mp4"
        )

        self.assertEqual(first, WebhookOutcome.APPLIED)
        self.assertEqual(second, WebhookOutcome.DUPLICATE)
        self.assertEqual(len(self.clients.detection.submitted), 1)
        match = self.load("m1")
        self.assertEqual(match.detection_status, "processing")

    def test_failed_webhook_fails_ingestion(self):
        self.add_match(
            "m1",
            source_link="https://share.example/m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )

        outcome = self.reconciler.handle_ingestion_webhook(
            "stream-1", "failed", error={"reason": "private album"}
        )

        self.assertEqual(outcome, WebhookOutcome.APPLIED)
        match = self.load("m1")
        self.assertEqual(match.ingestion_status, "failed")
        self.assertEqual(match.ingestion_failure_reason, "remote_failed")
        self.assertIn("private album", match.ingestion_error)
        self.assertEqual(self.sink.types(), ["video_download_failed"])
        self.assertEqual(self.clients.detection.submitted, [])

    def test_webhook_is_deferred_while_lease_is_held(self):
        self.add_match(
            "m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
        )
        self.assertTrue(self.reconciler.leases.acquire("ingestion_m1", 600))

        outcome = self.reconciler.handle_ingestion_webhook(
            "stream-1", "completed", "https://s3/m1.mp4"
        )

        self.assertEqual(outcome, WebhookOutcome.DEFERRED)
        self.assertEqual(self.load("m1").ingestion_status, "processing")

    def test_webhook_for_unknown_job(self):
        outcome = self.reconciler.handle_ingestion_webhook("nope", "completed", "x")

        self.assertEqual(outcome, WebhookOutcome.NOT_FOUND)

    def test_failing_match_does_not_block_others(self):
        self.clients.ingestion.poll_results = {
            "stream-bad": RuntimeError("unexpected payload"),
            "stream-good": StageResult.completed("https://s3/good.mp4"),
        }
        self.add_match(
            "bad",
            ingestion_status="processing",
            ingestion_job_id="stream-bad",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )
        self.add_match(
            "good",
            ingestion_status="processing",
            ingestion_job_id="stream-good",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )

        with self.assertLogs("matchflow.workers.reconciler", level="ERROR"):
            self.assertTrue(self.reconciler.run_tick())

        self.assertEqual(self.load("good").ingestion_status, "completed")
        bad = self.load("bad")
        self.assertEqual(bad.ingestion_status, "processing")
        self.assertEqual(bad.ingestion_retry_count, 0)
        self.assertEqual(self.reconciler.leases.active(), [])

    def test_second_tick_while_running_returns_false(self):
        self.clients.ingestion = BlockingStageClient("stream-1")
        self.reconciler.shutdown()
        self.reconciler = self._make_reconciler()
        self.add_match(
            "m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
            ingestion_started_at=NOW - timedelta(minutes=1),
        )
        results = []
        runner = threading.Thread(target=lambda: results.append(self.reconciler.run_tick()))
        runner.start()
        try:
            self.assertTrue(self.clients.ingestion.entered.wait(timeout=30))
            self.assertFalse(self.reconciler.run_tick())
        finally:
            self.clients.ingestion.release.set()
            runner.join(timeout=60)

        self.assertEqual(results, [True])
        status = self.reconciler.status()
        self.assertEqual(status["ticks_run"], 1)
        self.assertEqual(status["ticks_skipped"], 1)

    def test_timed_out_stage_fails_without_polling(self):
        self.add_match(
            "m1",
            ingestion_status="completed",
            video_url="https://cdn/m1.mp4",
            detection_status="processing",
            detection_job_id="det-1",
            detection_started_at=NOW - timedelta(hours=3),
        )

        self.reconciler.run_tick()

        match = self.load("m1")
        self.assertEqual(match.detection_status, "failed")
        self.assertEqual(match.detection_failure_reason, "timeout")
        self.assertEqual(self.clients.detection.polled, [])
        self.assertEqual(self.sink.types(), ["player_detection_failed"])

    def test_processing_stage_without_job_id_is_resubmitted(self):
        self.add_match(
            "m1",
            source_link="https://share.example/m1",
            ingestion_status="processing",
            ingestion_started_at=NOW - timedelta(minutes=2),
        )

        self.reconciler.run_tick()

        match = self.load("m1")
        self.assertEqual(match.ingestion_job_id, "stream-1")
        self.assertEqual(match.ingestion_retry_count, 1)
        self.assertEqual(self.clients.ingestion.submitted, [("https://share.example/m1",)])

    def test_detection_with_assignments_submits_analysis(self):
        self.add_match(
            "m1",
            ingestion_status="completed",
            video_url="https://cdn/m1.mp4",
            detection_status="completed",
            detection_job_id="det-1",
            players=[{"player_id": "a", "image_url": "https://cdn/a.jpg"}],
            player_assignments=[{"player_id": "a", "team": "left"}],
        )

        self.reconciler.run_tick()

        match = self.load("m1")
        self.assertEqual(match.analysis_status, "processing")
        self.assertEqual(match.analysis_job_id, "ana-1")
        self.assertEqual(
            self.clients.analysis.submitted,
            [("https://cdn/m1.mp4", [{"player_id": "a", "team": "left"}])],
        )
        self.assertEqual(self.sink.types(), ["analysis_started"])

    def test_start_stage_reports_busy_lease(self):
        self.add_match("m1", source_link="https://share.example/m1")
        self.reconciler.leases.acquire("ingestion_m1", 600)

        outcome = self.reconciler.start_stage("m1", "ingestion")

        self.assertEqual(outcome, StartOutcome.BUSY)
        self.assertEqual(self.clients.ingestion.submitted, [])

    def test_failed_analysis_submission_notifies_and_stays_not_started(self):
        self.clients.analysis.submit_error = ExternalServiceError("AI server down")
        self.add_match(
            "m1",
            ingestion_status="completed",
            video_url="https://cdn/m1.mp4",
            detection_status="completed",
            players=[{"player_id": "a"}],
            player_assignments=[{"player_id": "a"}],
        )

        outcome = self.reconciler.start_stage("m1", "analysis")

        self.assertEqual(outcome, StartOutcome.FAILED)
        match = self.load("m1")
        self.assertEqual(match.analysis_status, "not_started")
        self.assertEqual(match.analysis_retry_count, 0)
        self.assertEqual(self.sink.types(), ["analysis_error"])
        self.assertEqual(self.reconciler.leases.active(), [])

    def add_analysis_ready_match(self, match_id):
        self.add_match(
            match_id,
            ingestion_status="completed",
            video_url="https://cdn/m1.mp4",
            detection_status="completed",
            players=[{"player_id": "a"}],
            player_assignments=[{"player_id": "a"}],
        )

    def test_failing_analysis_submission_is_bounded_across_ticks(self):
        self.clients.analysis.submit_error = ExternalServiceError("AI server down")
        self.add_analysis_ready_match("m1")

        for _ in range(5):
            self.assertTrue(self.reconciler.run_tick())

        self.assertEqual(len(self.clients.analysis.submitted), 3)
        self.assertEqual(self.sink.types(), ["analysis_error", "analysis_failed"])
        match = self.load("m1")
        self.assertEqual(match.analysis_status, "failed")
        self.assertEqual(match.analysis_failure_reason, "retries_exhausted")
        self.assertEqual(match.analysis_submit_failures, 3)
        self.assertIn("AI server down", match.analysis_error)
        self.assertEqual(self.reconciler.leases.active(), [])

        # a visit puts the stage back in the loop's hands
        self.assertEqual(apply_read_time_corrections(match, LIMITS, NOW), ["analysis"])
        self.assertEqual(match.analysis_status, "processing")

    def test_analysis_submission_recovers_after_a_failure(self):
        self.clients.analysis.submit_error = ExternalServiceError("AI server down")
        self.add_analysis_ready_match("m1")

        self.reconciler.run_tick()
        match = self.load("m1")
        self.assertEqual(match.analysis_status, "not_started")
        self.assertEqual(match.analysis_submit_failures, 1)

        self.clients.analysis.submit_error = None
        self.reconciler.run_tick()

        match = self.load("m1")
        self.assertEqual(match.analysis_status, "processing")
        self.assertEqual(match.analysis_submit_failures, 0)
        self.assertIsNone(match.analysis_error)
        self.assertEqual(self.sink.types(), ["analysis_error", "analysis_started"])

    def test_failing_detection_submission_fails_stage_after_limit(self):
        self.clients.detection.submit_error = ExternalServiceError("AI server down")
        self.add_match("m1", ingestion_status="completed", video_url="https://cdn/m1.mp4")

        for _ in range(4):
            self.reconciler.run_tick()

        self.assertEqual(len(self.clients.detection.submitted), 3)
        match = self.load("m1")
        self.assertEqual(match.detection_status, "failed")
        self.assertEqual(match.detection_failure_reason, "retries_exhausted")
        self.assertEqual(self.sink.types(), ["player_detection_failed"])

    def test_completed_webhook_without_location_is_rejected(self):
        self.add_match(
            "m1",
            source_link="https://share.example/m1",
            ingestion_status="processing",
            ingestion_job_id="stream-1",
            ingestion_started_at=NOW - timedelta(minutes=10),
        )

        outcome = self.reconciler.handle_ingestion_webhook("stream-1", "completed", None)

        self.assertEqual(outcome, WebhookOutcome.REJECTED)
        match = self.load("m1")
        self.assertEqual(match.ingestion_status, "processing")
        self.assertEqual(match.ingestion_retry_count, 0)
        self.assertEqual(self.clients.detection.submitted, [])
        self.assertEqual(self.sink.types(), [])


if __name__ == "__main__":
    unittest.main()
