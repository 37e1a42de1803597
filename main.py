"""
Custody Agent Service

Runs the agent loop on a background thread and exposes a read-only surface:
health, the current agent state and Audit Spine events. Nothing
on this surface can trigger an on-chain action.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query

from custody.config import load_config
from custody.engine import AgentLoop, build_engine

load_dotenv(override=False)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("custody")


# ---------------------------------------------------------------------------
# Lifespan: build once, loop on a daemon thread
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    engine = build_engine(config)
    engine.start()

    stop = threading.Event()
    loop = AgentLoop(engine, config.poll_interval_ms)
    worker = threading.Thread(target=loop.run_forever, args=(stop,), daemon=True,
                              name="custody-agent-loop")
    worker.start()

    app.state.config = config
    app.state.engine = engine
    try:
        yield
    finally:
        stop.set()
        worker.join(timeout=5)
        engine.close()
        logger.info("agent loop stopped")


app = FastAPI(
    title="Vault Custody Agent",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "operational", "service": "custody-agent"}


@app.get("/state")
def state():
    engine = app.state.engine
    return {
        "config": app.state.config.redacted(),
        "agent": engine.identity.address,
        **engine.snapshot,
    }


def _audit():
    audit = app.state.engine.audit
    if audit is None:
        raise HTTPException(status_code=404, detail="Audit Spine is not configured.")
    return audit


@app.get("/audit")
def audit_events(limit: int = Query(50, ge=1, le=500), event_type: Optional[str] = None):
    return {"events": _audit().recent_events(limit=limit, event_type=event_type)}


@app.get("/audit/{event_id}")
def audit_event(event_id: str):
    event = _audit().get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event {event_id} not found.")
    return event
