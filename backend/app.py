from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from db import init_db, list_snapshots, load_latest_snapshot, load_snapshot
from policy import summarize_snapshot
from tasks import run_snapshot

logger = logging.getLogger(__name__)

API_KEY = os.getenv("TRUSTWATCH_API_KEY", "").strip()
PROTECTED_PREFIXES = ("/api/",)
LOG_LEVEL = os.getenv("TRUSTWATCH_LOG_LEVEL", "INFO").upper()

_REFRESH_LOCK = threading.Lock()


app = FastAPI(
    title="trustwatch",
    description="TLS certificate inventory with trust-chain validation and expiry severity.",
    version="0.1.0",
)


@app.on_event("startup")
def _startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()


@app.middleware("http")
async def require_api_key(request: Request, call_next):
    if not API_KEY:
        return await call_next(request)

    path = request.url.path
    if any(path.startswith(p) for p in PROTECTED_PREFIXES):
        provided = request.headers.get("x-api-key", "")
        if provided != API_KEY:
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing API key"})

    return await call_next(request)


@app.get("/health")
def health():
    return {"status": "ok"}


def _snapshot_payload(snap, snapshot_id: Optional[int] = None) -> Dict[str, Any]:
    doc = snap.to_json_dict()
    doc["summary"] = summarize_snapshot(snap)
    if snapshot_id is not None:
        doc["id"] = snapshot_id
    return doc


@app.get("/api/v1/snapshot")
def latest_snapshot():
    snap = load_latest_snapshot()
    if snap is None:
        raise HTTPException(status_code=404, detail="No snapshot yet")
    return _snapshot_payload(snap)


@app.get("/api/v1/snapshots")
def snapshots(limit: int = 20):
    limit = max(1, min(100, int(limit)))
    return {"snapshots": list_snapshots(limit=limit)}


@app.get("/api/v1/snapshots/{snapshot_id}")
def snapshot_by_id(snapshot_id: int):
    snap = load_snapshot(snapshot_id)
    if snap is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return _snapshot_payload(snap, snapshot_id)


def _refresh_worker() -> None:
    try:
        run_snapshot()
    except Exception:
        logger.exception("refresh failed")
    finally:
        _REFRESH_LOCK.release()


@app.post("/api/v1/refresh", status_code=202)
def refresh():
    if not _REFRESH_LOCK.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="Refresh already running")
    t = threading.Thread(target=_refresh_worker, daemon=True)
    t.start()
    return {"status": "started"}
