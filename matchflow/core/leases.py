"""Store-backed advisory leases.

A lease is a row in ``processing_leases`` keyed by resource (for example
``player_<matchId>``). The primary key makes ``acquire`` safe across threads,
worker processes and hosts: the database rejects the second insert for a key
whose row is still present, and only expired rows are deleted first.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from matchflow.core.models import ProcessingLease
from matchflow.core.normalizers import ensure_aware, utc_now

logger = logging.getLogger(__name__)

LEASE_PREFIXES = {
    "ingestion": "ingestion",
    "detection": "player",
    "analysis": "analysis",
}


def lease_key(stage: str, match_id: str) -> str:
    return f"{LEASE_PREFIXES[stage]}_{match_id}"


class LeaseManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def acquire(self, key: str, ttl_seconds: float) -> bool:
        now = self.clock()
        db: Session = self.session_factory()
        try:
            db.execute(
                delete(ProcessingLease).where(
                    ProcessingLease.resource_key == key,
                    ProcessingLease.expires_at <= now,
                )
            )
            db.add(
                ProcessingLease(
                    resource_key=key,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("LEASE_BUSY key=%s", key)
            return False
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.debug("LEASE_ACQUIRED key=%s ttl=%s", key, ttl_seconds)
        return True

    def release(self, key: str) -> None:
        db: Session = self.session_factory()
        try:
            db.execute(delete(ProcessingLease).where(ProcessingLease.resource_key == key))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def sweep(self) -> int:
        now = self.clock()
        db: Session = self.session_factory()
        try:
            result = db.execute(
                delete(ProcessingLease).where(ProcessingLease.expires_at <= now)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        removed = result.rowcount or 0
        if removed:
            logger.info("LEASE_SWEEP removed=%s", removed)
        return removed

    def active(self) -> List[ProcessingLease]:
        now = self.clock()
        db: Session = self.session_factory()
        try:
            leases = db.scalars(
                select(ProcessingLease)
                .where(ProcessingLease.expires_at > now)
                .order_by(ProcessingLease.acquired_at)
            ).all()
        finally:
            db.close()
        for lease in leases:
            lease.acquired_at = ensure_aware(lease.acquired_at)
            lease.expires_at = ensure_aware(lease.expires_at)
        return list(leases)
