import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict

from matchflow.core.env import load_env

load_env()

STAGES = ("ingestion", "detection", "analysis")

_DEFAULT_LIMITS = {
    # stage: (timeout seconds, max retries)
    "ingestion": (6 * 60 * 60, 720),
    "detection": (2 * 60 * 60, 50),
    "analysis": (48 * 60 * 60, 5760),
}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)) or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class StageLimits:
    timeout: timedelta
    max_retries: int


@dataclass(frozen=True)
class ReconcilerSettings:
    interval_seconds: float
    max_workers: int
    lease_ttl_seconds: float
    limits: Dict[str, StageLimits]
    # failed loop submissions of a not_started stage before it is failed
    max_submit_failures: int = 5


def load_stage_limits() -> Dict[str, StageLimits]:
    limits: Dict[str, StageLimits] = {}
    for stage, (timeout_default, retries_default) in _DEFAULT_LIMITS.items():
        prefix = stage.upper()
        limits[stage] = StageLimits(
            timeout=timedelta(
                seconds=_env_int(f"{prefix}_TIMEOUT_SECONDS", timeout_default)
            ),
            max_retries=max(1, _env_int(f"{prefix}_MAX_RETRIES", retries_default)),
        )
    return limits


def load_reconciler_settings() -> ReconcilerSettings:
    return ReconcilerSettings(
        interval_seconds=max(1.0, _env_float("RECONCILE_INTERVAL_SECONDS", 30.0)),
        max_workers=max(1, _env_int("RECONCILE_MAX_WORKERS", 8)),
        lease_ttl_seconds=max(1.0, _env_float("LEASE_TTL_SECONDS", 600.0)),
        limits=load_stage_limits(),
        max_submit_failures=max(1, _env_int("AUTO_SUBMIT_MAX_FAILURES", 5)),
    )
