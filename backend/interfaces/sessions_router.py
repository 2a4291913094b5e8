"""Session endpoints: start, pause, resume, stop, cancel and status reads."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from domain.errors import TimerEngineError
from domain.session import SessionMode
from interfaces import deps
from interfaces.errors import to_http

router = APIRouter(prefix="/sessions", tags=["sessions"])


class StartSessionRequest(BaseModel):
    companyId: str = Field(..., min_length=1)
    resourceRef: str = Field(..., min_length=1, description="Vehicle plate or reference")
    mode: SessionMode
    prestationId: Optional[str] = Field(default=None, description="Metered only, prices by the prestation")
    durationMinutes: Optional[float] = Field(default=None, gt=0, description="Fixed-duration only")
    ownerUserId: Optional[str] = None
    partnerTag: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


# ========== 1. Start ==========
@router.post("/start")
def start_session(payload: StartSessionRequest) -> Dict[str, Any]:
    duration = payload.durationMinutes * 60 if payload.durationMinutes is not None else None
    try:
        session = deps.engine.start(
            payload.companyId,
            payload.resourceRef,
            payload.mode,
            prestation_id=payload.prestationId,
            fixed_duration_seconds=duration,
            owner_user_id=payload.ownerUserId,
            partner_tag=payload.partnerTag,
            notes=payload.notes,
        )
        return deps.engine.describe(session).to_payload()
    except TimerEngineError as e:
        raise to_http(e)


# ========== 2. Pause / Resume ==========
@router.post("/{session_id}/pause")
def pause_session(session_id: str) -> Dict[str, Any]:
    try:
        return deps.engine.pause(session_id).to_payload()
    except TimerEngineError as e:
        raise to_http(e)


@router.post("/{session_id}/resume")
def resume_session(session_id: str) -> Dict[str, Any]:
    try:
        return deps.engine.resume(session_id).to_payload()
    except TimerEngineError as e:
        raise to_http(e)


# ========== 3. Stop / Cancel ==========
@router.post("/{session_id}/stop")
def stop_session(session_id: str) -> Dict[str, Any]:
    try:
        result = deps.engine.stop(session_id)
        return {
            "sessionId": result.session_id,
            "state": result.state.value,
            "finalElapsedSeconds": result.final_elapsed_seconds,
            "finalCost": round(result.final_cost, 2),
        }
    except TimerEngineError as e:
        raise to_http(e)


@router.post("/{session_id}/cancel")
def cancel_session(session_id: str) -> Dict[str, Any]:
    try:
        return deps.engine.cancel(session_id).to_payload()
    except TimerEngineError as e:
        raise to_http(e)


# ========== 4. Queries ==========
@router.get("/active/company/{company_id}")
def active_for_company(company_id: str) -> Dict[str, Any]:
    try:
        sessions = deps.engine.list_active(company_id)
    except TimerEngineError as e:
        raise to_http(e)
    return {
        "companyId": company_id,
        "sessions": [deps.engine.describe(s).to_payload() for s in sessions],
    }


@router.get("/active/resource/{resource_ref}")
def active_for_resource(resource_ref: str) -> Dict[str, Any]:
    try:
        sessions = deps.engine.list_active_for_resource(resource_ref)
    except TimerEngineError as e:
        raise to_http(e)
    return {
        "resourceRef": resource_ref,
        "sessions": [deps.engine.describe(s).to_payload() for s in sessions],
    }


@router.get("/{session_id}")
def session_status(session_id: str) -> Dict[str, Any]:
    try:
        return deps.engine.get_status(session_id).to_payload()
    except TimerEngineError as e:
        raise to_http(e)
