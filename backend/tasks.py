from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from celery import Celery

from config import load_config
from db import init_db, save_snapshot
from discovery import build_discoverers
from models import Snapshot
from orchestrator import new_orchestrator
from revocation import CRLCache

logger = logging.getLogger(__name__)

BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

celery_app = Celery("trustwatch", broker=BROKER_URL, backend=RESULT_BACKEND)

# Shared across runs in this process; entries expire at the CRL nextUpdate.
_CRL_CACHE = CRLCache()

celery_app.conf.update(
    task_track_started=True,
    worker_send_task_events=True,
    task_send_sent_event=True,
    result_extended=True,
    task_time_limit=int(os.environ.get("TASK_TIME_LIMIT", "900")),       # hard kill (seconds)
    task_soft_time_limit=int(os.environ.get("TASK_SOFT_TIME_LIMIT", "840")),
)


def run_snapshot(config_path: Optional[str] = None) -> tuple[int, Snapshot]:
    """Load config, run one orchestration and persist the snapshot."""
    cfg = load_config(config_path)

    orch = new_orchestrator(build_discoverers(cfg), cfg, crl_cache=_CRL_CACHE)
    snap = orch.run()

    # Same store the API reads (TRUSTWATCH_DB).
    init_db()
    snapshot_id = save_snapshot(snap)
    logger.info(
        "snapshot %d stored: findings=%d errors=%d",
        snapshot_id, len(snap.findings), len(snap.errors),
    )
    return snapshot_id, snap


@celery_app.task(name="run_snapshot_task")
def run_snapshot_task(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Execute one discovery run in a Celery worker."""
    snapshot_id, snap = run_snapshot(config_path)
    return {
        "snapshot_id": snapshot_id,
        "findings": len(snap.findings),
        "errors": dict(snap.errors),
    }


def _refresh_seconds() -> float:
    try:
        return load_config().refresh_every.total_seconds()
    except (OSError, ValueError) as e:
        logger.warning("using default refresh interval: %s", e)
        return 120.0


# Celery Beat schedule: one discovery run per refreshEvery
celery_app.conf.beat_schedule = {
    "trustwatch-refresh": {
        "task": "run_snapshot_task",
        "schedule": _refresh_seconds(),
    }
}
