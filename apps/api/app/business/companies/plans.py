"""Plan tiers and the concurrency limits they grant by default."""

from __future__ import annotations

from dataclasses import dataclass

from app.core.errors import DomainValidationError


@dataclass(frozen=True, slots=True)
class Plan:
    tier: str
    label: str
    default_active_limit: int


PLAN_REGISTRY: dict[str, Plan] = {
    "standard": Plan(tier="standard", label="Standard", default_active_limit=1),
    "pro": Plan(tier="pro", label="Pro", default_active_limit=2),
}


def get_plan(tier: str) -> Plan:
    plan = PLAN_REGISTRY.get(tier)
    if plan is None:
        raise DomainValidationError(f"unknown plan tier '{tier}'", details={"plan_tier": tier})
    return plan


def effective_active_limit(plan_tier: str, max_active_limit: int | None) -> int:
    """The company override wins over the plan default when it is set."""
    if max_active_limit is not None:
        return max_active_limit
    return get_plan(plan_tier).default_active_limit
