"""Periodic reconciliation of in-flight matches.

A tick runs one scan per stage. Each scan selects the matches that are due,
then fans out one attempt per match on a shared thread pool. An attempt owns
the ``<prefix>_<matchId>`` lease for its whole duration and works on its own
database session, so ticks from several worker processes can overlap safely.
"""

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, sessionmaker

from matchflow.core.clients import StageClients, StageResult, build_stage_clients
from matchflow.core.db import SessionLocal
from matchflow.core.leases import LeaseManager, lease_key
from matchflow.core.models import Match
from matchflow.core.normalizers import isoformat_or_none, normalize_error_text, utc_now
from matchflow.core.notifications import (
    NotificationSink,
    build_notification_sink,
    notify_analysis_error,
    notify_transition,
)
from matchflow.core.policy import PolicyAction, evaluate
from matchflow.core.settings import STAGES, ReconcilerSettings, load_reconciler_settings
from matchflow.core.stages import (
    FailureReason,
    PROCESSING_ALIASES,
    StageInputError,
    StageSubmissionError,
    StageState,
    StageStatus,
    fail,
    missing_inputs,
    poll,
    read_stage,
    resubmit,
    submit,
    transition,
    write_stage,
)
from matchflow.workers.celery_app import celery

logger = logging.getLogger(__name__)

SUBMIT_FAILURE_FIELDS = {
    "detection": "detection_submit_failures",
    "analysis": "analysis_submit_failures",
}


class StartOutcome(str, Enum):
    STARTED = "started"
    BUSY = "busy"
    SKIPPED = "skipped"
    FAILED = "failed"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


def _due_clause(stage: str):
    if stage == "ingestion":
        return Match.ingestion_status == StageStatus.PROCESSING.value
    if stage == "detection":
        return and_(
            Match.detection_status.in_(
                [StageStatus.PROCESSING.value, StageStatus.NOT_STARTED.value]
            ),
            Match.ingestion_status == StageStatus.COMPLETED.value,
            Match.video_url.is_not(None),
        )
    return or_(
        Match.analysis_status.in_(list(PROCESSING_ALIASES)),
        and_(
            Match.analysis_status == StageStatus.NOT_STARTED.value,
            Match.detection_status == StageStatus.COMPLETED.value,
            Match.player_assignments.is_not(None),
        ),
    )


def is_due(match: Match, stage: str) -> bool:
    status = read_stage(match, stage).status
    if status == StageStatus.PROCESSING:
        return stage != "detection" or not missing_inputs(match, stage)
    if status == StageStatus.NOT_STARTED and stage != "ingestion":
        return not missing_inputs(match, stage)
    return False


def _chain_target(match: Match, stage: str, status: StageStatus) -> Optional[str]:
    if status != StageStatus.COMPLETED:
        return None
    if stage == "ingestion":
        return "detection"
    if stage == "detection" and match.player_assignments:
        return "analysis"
    return None


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        clients: StageClients,
        sink: NotificationSink,
        settings: ReconcilerSettings,
        leases: Optional[LeaseManager] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clients = clients
        self.sink = sink
        self.settings = settings
        self.clock = clock
        self.leases = leases or LeaseManager(session_factory, clock=clock)
        self.executor = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="reconcile"
        )
        self._tick_lock = threading.Lock()
        self._ticks_run = 0
        self._ticks_skipped = 0
        self._last_tick_started_at: Optional[datetime] = None
        self._last_tick_finished_at: Optional[datetime] = None
        self._last_tick_stats: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------
    def run_tick(self) -> bool:
        """Run one reconciliation pass; ``False`` when a pass is already running."""
        if not self._tick_lock.acquire(blocking=False):
            self._ticks_skipped += 1
            logger.warning("RECONCILE_TICK_SKIP reason=previous_tick_running")
            return False
        try:
            self._last_tick_started_at = self.clock()
            logger.info("RECONCILE_TICK_START")
            stats: Dict[str, Any] = {}
            with ThreadPoolExecutor(max_workers=len(STAGES), thread_name_prefix="scan") as scans:
                futures = {stage: scans.submit(self.scan, stage) for stage in STAGES}
                for stage, future in futures.items():
                    try:
                        stats[stage] = future.result()
                    except Exception:
                        logger.exception("RECONCILE_SCAN_FAIL stage=%s", stage)
                        stats[stage] = {"error": 1}
            self._ticks_run += 1
            self._last_tick_finished_at = self.clock()
            self._last_tick_stats = stats
            logger.info("RECONCILE_TICK_OK stats=%s", stats)
            return True
        finally:
            self._tick_lock.release()

    def scan(self, stage: str) -> Dict[str, int]:
        self.leases.sweep()
        match_ids = self.select_due(stage)
        futures = [
            self.executor.submit(self.reconcile_match, stage, match_id)
            for match_id in match_ids
        ]
        outcomes: Counter = Counter()
        for future in futures:
            outcomes[future.result()] += 1
        if match_ids:
            logger.info(
                "RECONCILE_SCAN_OK stage=%s due=%s outcomes=%s",
                stage,
                len(match_ids),
                dict(outcomes),
            )
        return {"due": len(match_ids), **outcomes}

    def select_due(self, stage: str) -> List[str]:
        db: Session = self.session_factory()
        try:
            return list(
                db.scalars(
                    select(Match.id)
                    .where(_due_clause(stage))
                    .order_by(Match.updated_at)
                ).all()
            )
        finally:
            db.close()

    # ------------------------------------------------------------------
    # per match
    # ------------------------------------------------------------------
    def reconcile_match(self, stage: str, match_id: str) -> str:
        key = lease_key(stage, match_id)
        try:
            if not self.leases.acquire(key, self.settings.lease_ttl_seconds):
                return "busy"
        except Exception:
            logger.exception("RECONCILE_LEASE_FAIL stage=%s match_id=%s", stage, match_id)
            return "error"
        try:
            outcome, next_stage = self._reconcile_locked(stage, match_id)
            if next_stage:
                # still holding this stage's lease: completion and the next
                # submission form one step
                self.start_stage(match_id, next_stage)
            return outcome
        except Exception:
            logger.exception("RECONCILE_MATCH_FAIL stage=%s match_id=%s", stage, match_id)
            return "error"
        finally:
            try:
                self.leases.release(key)
            except Exception:
                logger.exception("LEASE_RELEASE_FAIL key=%s", key)

    def _reconcile_locked(self, stage: str, match_id: str) -> Tuple[str, Optional[str]]:
        db: Session = self.session_factory()
        try:
            match = db.get(Match, match_id)
            if match is None or not is_due(match, stage):
                return "skipped", None

            now = self.clock()
            before = read_stage(match, stage)

            if before.status == StageStatus.NOT_STARTED:
                try:
                    after = submit(match, stage, self.clients, now)
                except StageSubmissionError as exc:
                    db.rollback()
                    return self._record_submit_failure(db, match, stage, before, exc, now), None
                setattr(match, SUBMIT_FAILURE_FIELDS[stage], 0)
                outcome = "submitted"
            else:
                decision = evaluate(before, self.settings.limits[stage], now)
                current = before
                if decision.stamped_started_at is not None:
                    current = replace(before, started_at=decision.stamped_started_at)
                    write_stage(match, stage, current)

                if decision.action in (PolicyAction.FAIL_TIMEOUT, PolicyAction.FAIL_EXHAUSTED):
                    after = fail(current, decision.reason, decision.message, now)
                    write_stage(match, stage, after)
                    logger.warning(
                        "STAGE_FAIL stage=%s match_id=%s reason=%s",
                        stage,
                        match_id,
                        decision.reason,
                    )
                elif decision.action == PolicyAction.RESUBMIT:
                    after = resubmit(match, stage, self.clients, now)
                elif decision.action == PolicyAction.POLL:
                    after = poll(match, stage, self.clients, now)
                else:
                    return "skipped", None
                outcome = decision.action.value

            db.commit()
            notify_transition(self.sink, match, stage, before, after)
            return outcome, _chain_target(match, stage, after.status)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _record_submit_failure(
        self,
        db: Session,
        match: Match,
        stage: str,
        before: StageState,
        exc: StageSubmissionError,
        now: datetime,
    ) -> str:
        """Count a failed loop submission; fail the stage once the budget is spent.

        ``analysis_error`` is only emitted for the first failure of a run.
        """
        field = SUBMIT_FAILURE_FIELDS[stage]
        failures = (getattr(match, field) or 0) + 1
        setattr(match, field, failures)
        logger.warning(
            "STAGE_SUBMIT_FAIL stage=%s match_id=%s failures=%s error=%s",
            stage,
            match.id,
            failures,
            exc,
        )
        if failures >= self.settings.max_submit_failures:
            after = fail(
                before,
                FailureReason.RETRIES_EXHAUSTED,
                f"Could not submit after {failures} attempts: {exc}",
                now,
            )
            outcome = "submit_exhausted"
        else:
            after = replace(before, error=str(exc))
            outcome = "submit_failed"
        write_stage(match, stage, after)
        db.commit()
        if stage == "analysis" and failures == 1:
            notify_analysis_error(self.sink, match, str(exc))
        notify_transition(self.sink, match, stage, before, after)
        return outcome

    # ------------------------------------------------------------------
    # explicit starts and webhooks
    # ------------------------------------------------------------------
    def start_stage(self, match_id: str, stage: str, raise_errors: bool = False) -> StartOutcome:
        """Submit a stage for a match under its lease.

        With ``raise_errors`` the caller sees ``StageInputError`` and
        ``StageSubmissionError``; otherwise they are logged and reported as
        ``SKIPPED`` or ``FAILED``.
        """
        key = lease_key(stage, match_id)
        if not self.leases.acquire(key, self.settings.lease_ttl_seconds):
            logger.info("STAGE_START_BUSY stage=%s match_id=%s", stage, match_id)
            return StartOutcome.BUSY
        try:
            db: Session = self.session_factory()
            try:
                match = db.get(Match, match_id)
                if match is None:
                    return StartOutcome.SKIPPED
                before = read_stage(match, stage)
                if before.status in (StageStatus.PROCESSING, StageStatus.COMPLETED):
                    logger.info(
                        "STAGE_START_SKIP stage=%s match_id=%s status=%s",
                        stage,
                        match_id,
                        before.status.value,
                    )
                    return StartOutcome.SKIPPED
                try:
                    after = submit(match, stage, self.clients, self.clock())
                except StageInputError as exc:
                    if raise_errors:
                        raise
                    logger.info(
                        "STAGE_START_SKIP stage=%s match_id=%s missing=%s",
                        stage,
                        match_id,
                        ",".join(exc.missing),
                    )
                    return StartOutcome.SKIPPED
                except StageSubmissionError as exc:
                    db.rollback()
                    logger.warning(
                        "STAGE_SUBMIT_FAIL stage=%s match_id=%s error=%s",
                        stage,
                        match_id,
                        exc,
                    )
                    if stage == "analysis":
                        notify_analysis_error(self.sink, match, str(exc))
                    if raise_errors:
                        raise
                    return StartOutcome.FAILED
                if stage in SUBMIT_FAILURE_FIELDS:
                    setattr(match, SUBMIT_FAILURE_FIELDS[stage], 0)
                db.commit()
                notify_transition(self.sink, match, stage, before, after)
                return StartOutcome.STARTED
            finally:
                db.close()
        finally:
            self.leases.release(key)

    def handle_ingestion_webhook(
        self,
        job_id: str,
        status: str,
        location: Optional[str] = None,
        error: Any = None,
    ) -> WebhookOutcome:
        if (status or "").lower() == "completed" and not location:
            logger.warning("WEBHOOK_REJECTED job_id=%s reason=missing_video_url", job_id)
            return WebhookOutcome.REJECTED

        db: Session = self.session_factory()
        try:
            match_id = db.scalar(select(Match.id).where(Match.ingestion_job_id == job_id))
        finally:
            db.close()
        if not match_id:
            logger.warning("WEBHOOK_UNKNOWN_JOB job_id=%s", job_id)
            return WebhookOutcome.NOT_FOUND

        key = lease_key("ingestion", match_id)
        if not self.leases.acquire(key, self.settings.lease_ttl_seconds):
            # the loop is polling this match right now and will see the result
            logger.info("WEBHOOK_DEFERRED job_id=%s match_id=%s", job_id, match_id)
            return WebhookOutcome.DEFERRED
        try:
            db = self.session_factory()
            try:
                match = db.get(Match, match_id)
                before = read_stage(match, "ingestion")
                if before.is_terminal or before.job_id != job_id:
                    logger.info(
                        "WEBHOOK_DUPLICATE job_id=%s match_id=%s status=%s",
                        job_id,
                        match_id,
                        before.status.value,
                    )
                    return WebhookOutcome.DUPLICATE

                if (status or "").lower() == "completed":
                    result = StageResult.completed(location)
                else:
                    result = StageResult.failed(normalize_error_text(error) or "Download failed")
                after = transition(before, result, self.clock())
                write_stage(match, "ingestion", after)
                db.commit()
                notify_transition(self.sink, match, "ingestion", before, after)
                logger.info(
                    "WEBHOOK_APPLIED job_id=%s match_id=%s status=%s",
                    job_id,
                    match_id,
                    after.status.value,
                )
                next_stage = _chain_target(match, "ingestion", after.status)
            finally:
                db.close()
            if next_stage:
                self.start_stage(match_id, next_stage)
            return WebhookOutcome.APPLIED
        finally:
            self.leases.release(key)

    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        leases = self.leases.active()
        return {
            "running": self._tick_lock.locked(),
            "interval_seconds": self.settings.interval_seconds,
            "max_workers": self.settings.max_workers,
            "ticks_run": self._ticks_run,
            "ticks_skipped": self._ticks_skipped,
            "last_tick_started_at": isoformat_or_none(self._last_tick_started_at),
            "last_tick_finished_at": isoformat_or_none(self._last_tick_finished_at),
            "last_tick_stats": self._last_tick_stats,
            "active_leases": [
                {
                    "resource_key": lease.resource_key,
                    "acquired_at": isoformat_or_none(lease.acquired_at),
                    "expires_at": isoformat_or_none(lease.expires_at),
                }
                for lease in leases
            ],
        }

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


@lru_cache(maxsize=1)
def get_reconciler() -> Reconciler:
    return Reconciler(
        session_factory=SessionLocal,
        clients=build_stage_clients(),
        sink=build_notification_sink(),
        settings=load_reconciler_settings(),
    )


@celery.task(name="matchflow.workers.reconciler.reconcile_tick")
def reconcile_tick() -> bool:
    return get_reconciler().run_tick()
