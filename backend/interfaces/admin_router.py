"""Administration endpoints: company policies, rates, statistics, ledger outbox."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from application.session_registry import UsageSummary
from domain.errors import TimerEngineError
from domain.policy import CompanyPolicy
from domain.rate import RateDefinition, RateKind
from interfaces import deps
from interfaces.errors import to_http

router = APIRouter(prefix="/admin", tags=["admin"])


class PolicyRequest(BaseModel):
    # Omitted fields are left unchanged; an explicit null on the two limits means unlimited
    isAuthorized: Optional[bool] = None
    canUseTimers: Optional[bool] = None
    canUseCountdowns: Optional[bool] = None
    maxConcurrentResources: Optional[int] = Field(default=None, ge=0)
    maxSessionDurationMinutes: Optional[float] = Field(default=None, gt=0)
    requireApproval: Optional[bool] = None
    approvalThreshold: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)


class AuthorizeRequest(BaseModel):
    authorizedBy: Optional[str] = None


class PrestationRequest(BaseModel):
    companyId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    ratePerMinute: float = Field(..., ge=0)
    prestationId: Optional[str] = None
    active: bool = True


class ResourceRequest(BaseModel):
    resourceRef: str = Field(..., min_length=1, description="Vehicle plate or reference")
    companyId: str = Field(..., min_length=1)
    ratePerMinute: float = Field(..., ge=0)
    name: Optional[str] = None
    active: bool = True


class SetRateRequest(BaseModel):
    ratePerMinute: float


# Request field -> CompanyPolicy field
_POLICY_FIELDS = {
    "isAuthorized": "is_authorized",
    "canUseTimers": "can_use_timers",
    "canUseCountdowns": "can_use_countdowns",
    "maxConcurrentResources": "max_concurrent_resources",
    "requireApproval": "require_approval",
    "approvalThreshold": "approval_threshold",
    "notes": "notes",
}


# ========== Company policies ==========
@router.get("/companies/{company_id}/policy")
def get_policy(company_id: str) -> Dict[str, Any]:
    try:
        return _policy_to_dict(deps.authorization_gate.get_company_policy(company_id))
    except TimerEngineError as e:
        raise to_http(e)


@router.put("/companies/{company_id}/policy")
def set_policy(company_id: str, payload: PolicyRequest) -> Dict[str, Any]:
    provided = payload.model_dump(exclude_unset=True)
    fields = {_POLICY_FIELDS[k]: v for k, v in provided.items() if k in _POLICY_FIELDS}
    if "maxSessionDurationMinutes" in provided:
        minutes = provided["maxSessionDurationMinutes"]
        fields["max_session_duration_seconds"] = minutes * 60 if minutes is not None else None
    try:
        return _policy_to_dict(deps.authorization_gate.set_company_policy(company_id, **fields))
    except TimerEngineError as e:
        raise to_http(e)


@router.post("/companies/{company_id}/authorize")
def authorize_company(company_id: str, payload: Optional[AuthorizeRequest] = None) -> Dict[str, Any]:
    try:
        policy = deps.authorization_gate.authorize(company_id, payload.authorizedBy if payload else None)
        return _policy_to_dict(policy)
    except TimerEngineError as e:
        raise to_http(e)


@router.post("/companies/{company_id}/revoke")
def revoke_company(company_id: str) -> Dict[str, Any]:
    try:
        return _policy_to_dict(deps.authorization_gate.revoke(company_id))
    except TimerEngineError as e:
        raise to_http(e)


@router.get("/companies/{company_id}/statistics")
def company_statistics(company_id: str) -> Dict[str, Any]:
    stats = deps.session_registry.company_statistics(company_id)
    return {
        "companyId": stats.company_id,
        "totalSessions": stats.total_sessions,
        "totalRevenue": round(stats.total_revenue, 2),
        "lastUsedAt": stats.last_used_at.isoformat() if stats.last_used_at else None,
        "activeSessions": stats.active_sessions,
        "byUser": {k: _usage_to_dict(v) for k, v in stats.by_user.items()},
        "byResource": {k: _usage_to_dict(v) for k, v in stats.by_resource.items()},
    }


# ========== Rates ==========
@router.post("/prestations")
def define_prestation(payload: PrestationRequest) -> Dict[str, Any]:
    try:
        definition = deps.rate_registry.define_prestation(
            payload.companyId,
            payload.name,
            payload.ratePerMinute,
            prestation_id=payload.prestationId,
            active=payload.active,
        )
        return _rate_to_dict(definition)
    except TimerEngineError as e:
        raise to_http(e)


@router.post("/resources")
def register_resource(payload: ResourceRequest) -> Dict[str, Any]:
    try:
        definition = deps.rate_registry.register_resource(
            payload.resourceRef,
            payload.companyId,
            payload.ratePerMinute,
            name=payload.name,
            active=payload.active,
        )
        return _rate_to_dict(definition)
    except TimerEngineError as e:
        raise to_http(e)


@router.get("/companies/{company_id}/rates")
def list_rates(company_id: str, kind: Optional[RateKind] = None) -> Dict[str, Any]:
    definitions = deps.rate_registry.list_definitions(company_id, kind)
    return {"companyId": company_id, "rates": [_rate_to_dict(d) for d in definitions]}


@router.get("/rates/{rate_id}")
def get_rate(rate_id: str) -> Dict[str, Any]:
    try:
        return _rate_to_dict(deps.rate_registry.get_definition(rate_id))
    except TimerEngineError as e:
        raise to_http(e)


@router.put("/rates/{rate_id}")
def set_rate(rate_id: str, payload: SetRateRequest) -> Dict[str, Any]:
    try:
        return _rate_to_dict(deps.rate_registry.set_rate(rate_id, payload.ratePerMinute))
    except TimerEngineError as e:
        raise to_http(e)


# ========== Configuration ==========
@router.post("/config/reload")
def reload_config() -> Dict[str, Any]:
    settings = deps.reload_settings_from_disk()
    return {"configVersion": settings.version, "storage": settings.storage_backend}


# ========== Ledger outbox ==========
@router.post("/ledger/flush")
def flush_ledger() -> Dict[str, Any]:
    delivered = deps.billing_service.flush_pending()
    return {"delivered": delivered, "pending": deps.billing_service.pending_count()}


# Helpers --------------------------------------------------------------
def _policy_to_dict(policy: CompanyPolicy) -> Dict[str, Any]:
    max_duration = policy.max_session_duration_seconds
    return {
        "companyId": policy.company_id,
        "isAuthorized": policy.is_authorized,
        "canUseTimers": policy.can_use_timers,
        "canUseCountdowns": policy.can_use_countdowns,
        "maxConcurrentResources": policy.max_concurrent_resources,
        "maxSessionDurationMinutes": max_duration / 60 if max_duration is not None else None,
        "requireApproval": policy.require_approval,
        "approvalThreshold": policy.approval_threshold,
        "authorizedBy": policy.authorized_by,
        "authorizedAt": policy.authorized_at.isoformat() if policy.authorized_at else None,
        "notes": policy.notes,
        "statistics": {
            "totalSessions": policy.total_sessions,
            "totalRevenue": round(policy.total_revenue, 2),
            "lastUsedAt": policy.last_used_at.isoformat() if policy.last_used_at else None,
        },
    }


def _rate_to_dict(definition: RateDefinition) -> Dict[str, Any]:
    return {
        "rateId": definition.rate_id,
        "companyId": definition.company_id,
        "kind": definition.kind.value,
        "name": definition.name,
        "ratePerMinute": definition.rate_per_minute,
        "active": definition.active,
    }


def _usage_to_dict(usage: UsageSummary) -> Dict[str, Any]:
    return {
        "sessions": usage.sessions,
        "billedMinutes": round(usage.billed_seconds / 60, 2),
        "revenue": round(usage.revenue, 2),
        "lastUsedAt": usage.last_used_at.isoformat() if usage.last_used_at else None,
    }
