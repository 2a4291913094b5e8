"""Authorization gate: per-company permission and limits for starting sessions."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, TYPE_CHECKING

from domain.errors import ApprovalRequired, AuthorizationError, LimitExceeded, NotFoundError, ValidationError
from domain.policy import POLICY_SETTINGS, CompanyPolicy
from domain.session import SessionMode

if TYPE_CHECKING:
    from app.config import AppConfig
    from application.clock import Clock
    from infrastructure.repository import TimerRepository

logger = logging.getLogger(__name__)


class AuthorizationGate:
    def __init__(self, config: "AppConfig", repository: "TimerRepository", clock: "Clock"):
        self.config = config
        self.repository = repository
        self.clock = clock
        self._reload_config()

    def _reload_config(self) -> None:
        self.policy_defaults: Dict[str, Any] = {
            key: value
            for key, value in (self.config.policy_defaults or {}).items()
            if key in POLICY_SETTINGS
        }

    def update_config(self, config: "AppConfig") -> None:
        self.config = config
        self._reload_config()

    # ================== Checks ==================
    def check_access(self, company_id: str, mode: SessionMode) -> CompanyPolicy:
        """Authorization and feature flag only. Runs before anything else on start."""
        policy = self.get_company_policy(company_id)
        if not policy.is_authorized:
            raise AuthorizationError(f"Company {company_id} is not authorized to use timers")
        if not policy.allows_mode(mode):
            feature = "countdowns" if mode == SessionMode.FIXED_DURATION else "timers"
            raise AuthorizationError(f"Company {company_id} may not use {feature}")
        return policy

    def authorize_start(
        self,
        company_id: str,
        mode: SessionMode,
        *,
        active_count: int,
        requested_duration_seconds: Optional[float] = None,
        projected_cost: Optional[float] = None,
    ) -> CompanyPolicy:
        """
        Full start check, in order: authorization, feature flag, concurrency
        cap, duration cap, approval threshold.

        ``projected_cost`` is None for metered sessions, which skip approval.
        """
        policy = self.check_access(company_id, mode)

        cap = policy.max_concurrent_resources
        if cap is not None and active_count >= cap:
            raise LimitExceeded(f"Company {company_id} already has {active_count} of {cap} active sessions")

        max_duration = policy.max_session_duration_seconds
        if (
            max_duration is not None
            and requested_duration_seconds is not None
            and requested_duration_seconds > max_duration
        ):
            raise LimitExceeded(
                f"Requested duration {requested_duration_seconds:.0f}s exceeds the {max_duration:.0f}s limit"
            )

        if policy.require_approval and projected_cost is not None and projected_cost >= policy.approval_threshold:
            raise ApprovalRequired(
                f"Projected cost {projected_cost:.2f} needs approval (threshold {policy.approval_threshold:.2f})",
                projected_cost=projected_cost,
                threshold=policy.approval_threshold,
            )
        return policy

    # ================== Administration ==================
    def get_company_policy(self, company_id: str) -> CompanyPolicy:
        policy = self.repository.get_policy(company_id)
        if policy is None:
            raise NotFoundError(f"Company {company_id} has no timer policy")
        return policy

    def set_company_policy(self, company_id: str, **fields: Any) -> CompanyPolicy:
        """Create or update the settings of a policy. Running counters are kept."""
        unknown = set(fields) - set(POLICY_SETTINGS)
        if unknown:
            raise ValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")
        self._validate_settings(fields)

        def mutate(policy: CompanyPolicy) -> None:
            for key, value in fields.items():
                setattr(policy, key, value)
            if fields.get("is_authorized") and policy.authorized_at is None:
                policy.authorized_at = self.clock.now()

        policy = self.repository.update_policy(company_id, mutate, create=lambda: self._new_policy(company_id))
        logger.info("Policy for company %s updated: %s", company_id, sorted(fields))
        return policy

    def authorize(self, company_id: str, authorized_by: Optional[str] = None) -> CompanyPolicy:
        now = self.clock.now()
        policy = self.repository.update_policy(
            company_id,
            lambda p: p.authorize(authorized_by, now),
            create=lambda: self._new_policy(company_id),
        )
        logger.info("Company %s authorized for timers by %s", company_id, authorized_by or "system")
        return policy

    def revoke(self, company_id: str) -> CompanyPolicy:
        policy = self.repository.update_policy(company_id, lambda p: p.revoke())
        logger.info("Timer authorization revoked for company %s", company_id)
        return policy

    # Helpers --------------------------------------------------------------
    def _new_policy(self, company_id: str) -> CompanyPolicy:
        return CompanyPolicy(company_id=company_id, **self.policy_defaults)

    @staticmethod
    def _validate_settings(fields: Dict[str, Any]) -> None:
        for flag in ("is_authorized", "can_use_timers", "can_use_countdowns", "require_approval"):
            if flag in fields and fields[flag] is None:
                raise ValidationError(f"{flag} cannot be null")
        cap = fields.get("max_concurrent_resources")
        if cap is not None and cap < 0:
            raise ValidationError("max_concurrent_resources must be >= 0")
        max_duration = fields.get("max_session_duration_seconds")
        if max_duration is not None and max_duration <= 0:
            raise ValidationError("max_session_duration_seconds must be positive")
        threshold = fields.get("approval_threshold")
        if "approval_threshold" in fields and (threshold is None or threshold < 0):
            raise ValidationError("approval_threshold must be >= 0")
