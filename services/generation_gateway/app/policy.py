from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .errors import FailureKind, GatewayError
from .keys import Principal, Scope, Tier, normalize_tier


@dataclass(frozen=True)
class AccessPolicy:
    required_scope: Optional[Scope] = None
    required_tiers: Optional[frozenset[Tier]] = None
    require_credits: bool = True


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: Optional[FailureKind] = None
    message: str = ""

    def raise_for_rejection(self) -> None:
        if not self.allowed and self.reason is not None:
            raise GatewayError(self.reason, self.message)


ALLOW = PolicyDecision(allowed=True)

READ_ACCESS = AccessPolicy(require_credits=False)
FULL_ACCESS = AccessPolicy(required_scope=Scope.FULL, require_credits=True)
PRO_ACCESS = AccessPolicy(
    required_scope=Scope.FULL,
    required_tiers=frozenset({Tier.PRO, Tier.TEAM, Tier.ENTERPRISE}),
    require_credits=True,
)


def authorize(principal: Principal, policy: AccessPolicy) -> PolicyDecision:
    # Order is fixed: scope, tier, credits. The first failing check wins.
    if policy.required_scope is not None and not principal.scope.satisfies(policy.required_scope):
        return PolicyDecision(
            allowed=False,
            reason=FailureKind.INSUFFICIENT_SCOPE,
            message=(
                f"This endpoint requires {policy.required_scope.value} access scope. "
                f"Your API key has {principal.scope.value} access."
            ),
        )

    if policy.required_tiers and principal.tier not in policy.required_tiers:
        allowed = ", ".join(sorted(tier.value for tier in policy.required_tiers))
        return PolicyDecision(
            allowed=False,
            reason=FailureKind.INSUFFICIENT_TIER,
            message=(
                "This endpoint requires one of the following subscription tiers: "
                f"{allowed}. Your tier: {principal.tier.value}"
            ),
        )

    if policy.require_credits and principal.credits_remaining <= 0:
        return PolicyDecision(
            allowed=False,
            reason=FailureKind.CREDITS_EXHAUSTED,
            message=(
                "No credits remaining. Please upgrade your subscription "
                "or purchase more credits."
            ),
        )

    return ALLOW


def parse_tier_set(value: str | None) -> Optional[frozenset[Tier]]:
    if not value or not value.strip():
        return None
    try:
        return frozenset(normalize_tier(item) for item in value.split(",") if item.strip())
    except ValueError as exc:
        raise RuntimeError(f"unknown tier in tier list: {value!r}") from exc


def policy_from_env(base: AccessPolicy, tiers_env: str) -> AccessPolicy:
    required_tiers = parse_tier_set(os.getenv(tiers_env))
    if required_tiers is None:
        return base
    return AccessPolicy(
        required_scope=base.required_scope,
        required_tiers=required_tiers,
        require_credits=base.require_credits,
    )
