"""REST endpoints for the sweep server."""

from __future__ import annotations

from dataclasses import asdict
import math
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from wsa_sweep.engine import Engine
from wsa_sweep.errors import (
    AllocationFailure,
    CaptureTimeout,
    DeviceBusy,
    InvalidPlan,
    MalformedPacket,
    SweepError,
    TransportError,
)
from wsa_sweep.report import make_error_report
from wsa_sweep.sweep import FrequencyPlan


router = APIRouter()

# Checked in order; the first matching class wins.
_ERROR_STATUS = (
    (InvalidPlan, 400),
    (AllocationFailure, 400),
    (DeviceBusy, 409),
    (CaptureTimeout, 504),
    (TransportError, 502),
    (MalformedPacket, 502),
)


def _engine(request: Request) -> Engine:
    return request.app.state.engine


def _serialize_status(engine: Engine) -> dict[str, Any]:
    return {
        "status": engine.status(),
        "error": engine.last_error,
    }


def _http_error(exc: SweepError) -> HTTPException:
    status_code = 500
    for error_cls, code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=make_error_report(exc))


def _int_field(payload: dict[str, Any], key: str, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HTTPException(status_code=400, detail=f"{key} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise HTTPException(status_code=400, detail=f"{key} must be a finite number")
    return value


@router.get("/api/status")
def get_status(request: Request) -> dict[str, Any]:
    return _serialize_status(_engine(request))


@router.get("/api/config")
def get_config(request: Request) -> dict[str, Any]:
    return {"config": asdict(_engine(request).cfg)}


@router.post("/api/connect")
def connect_device(request: Request) -> dict[str, Any]:
    engine = _engine(request)
    try:
        engine.connect()
    except SweepError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, **_serialize_status(engine)}


@router.post("/api/disconnect")
def disconnect_device(request: Request) -> dict[str, Any]:
    engine = _engine(request)
    engine.disconnect()
    return {"ok": True, **_serialize_status(engine)}


@router.post("/api/sweep")
def run_sweep(request: Request, payload: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    """Sweep the requested span and return the peaks report."""

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Sweep payload must be a JSON object")
    engine = _engine(request)
    cfg = engine.cfg

    peaks = _int_field(payload, "peaks", cfg.peaks)
    if peaks < 0 or int(peaks) != peaks:
        raise HTTPException(status_code=400, detail="peaks must be a non-negative integer")
    mode = payload.get("mode") or cfg.mode
    if not isinstance(mode, str):
        raise HTTPException(status_code=400, detail="mode must be a string")

    try:
        plan = FrequencyPlan(
            _int_field(payload, "fstart_hz", cfg.fstart_hz),
            _int_field(payload, "fstop_hz", cfg.fstop_hz),
            _int_field(payload, "rbw_hz", cfg.rbw_hz),
        )
        return engine.run(plan, int(peaks), mode)
    except SweepError as exc:
        raise _http_error(exc) from exc
