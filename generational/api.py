"""Minimal live API: read-only GET endpoints for the latest cycle. Call and get values."""
from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException

# Engine reference set by main when starting simulate --api
_engine: Any = None


def set_engine(engine: Any) -> None:
    global _engine
    _engine = engine


def get_engine() -> Any:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Simulation not running")
    return _engine


app = FastAPI(title="Generational Events Engine API", description="Read-only cycle results. Call and get values.")


def create_app(engine: Any | None = None) -> FastAPI:
    if engine is not None:
        set_engine(engine)
    return app


def _latest(e: Any) -> Any:
    if e.last_result is None:
        raise HTTPException(status_code=404, detail="No cycle has completed yet")
    return e.last_result


@app.get("/status")
def get_status() -> dict:
    """Engine status: current cycle, seed, crisis window, last report status."""
    return get_engine().summary()


@app.get("/cycles/latest")
def get_latest_cycle() -> dict:
    """Latest cycle handoff: accepted events, held events, transitions, report."""
    return _latest(get_engine()).to_dict()


@app.get("/cycles/latest/report")
def get_latest_report() -> dict:
    """Validation report of the latest cycle."""
    return _latest(get_engine()).report.to_dict()


@app.get("/citizens/{citizen_id}")
def get_citizen(citizen_id: str) -> dict:
    """Last committed state of one citizen."""
    e = get_engine()
    citizen = e.registry.get(citizen_id)
    if citizen is None:
        raise HTTPException(status_code=404, detail="Not found")
    return citizen.to_record()
