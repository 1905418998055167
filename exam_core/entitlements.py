"""Plan-tier and role gate shared by every mutating route.

One plan-rank enum, one role-bypass table. Raw plan values coming from
profiles or payment webhooks are parsed once here into `PlanTier`; code past
this module never sees a plan string.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Tuple

from . import config as cfg_defaults
from .errors import (
    AuthError,
    InternalError,
    PlanRequiredError,
    QuotaExceededError,
    ServiceUnavailableError,
)
from .flags import FlagAudience, FlagResolver

log = logging.getLogger(__name__)


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    BOOSTER = "booster"
    MASTER = "master"

    @property
    def rank(self) -> int:
        return _PLAN_RANK[self]


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"


_PLAN_RANK: Dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.STARTER: 1,
    PlanTier.BOOSTER: 2,
    PlanTier.MASTER: 3,
}

PLAN_ORDER: Tuple[PlanTier, ...] = tuple(sorted(_PLAN_RANK, key=_PLAN_RANK.__getitem__))

_PLAN_ALIASES: Dict[str, PlanTier] = {
    "seedling": PlanTier.FREE,
    "rocket": PlanTier.STARTER,
    "owl": PlanTier.BOOSTER,
}

# roles that bypass the plan comparison for a given required tier
_ROLE_BYPASS: Dict[PlanTier, FrozenSet[Role]] = {
    PlanTier.FREE: frozenset({Role.ADMIN}),
    PlanTier.STARTER: frozenset({Role.ADMIN}),
    PlanTier.BOOSTER: frozenset({Role.ADMIN}),
    PlanTier.MASTER: frozenset({Role.ADMIN, Role.TEACHER}),
}


class PlanParseError(ValueError):
    pass


def parse_plan(raw: object) -> PlanTier:
    if isinstance(raw, PlanTier):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise PlanParseError(f"not a plan value: {raw!r}")
    value = raw.strip().lower()
    try:
        return PlanTier(value)
    except ValueError:
        pass
    if value in _PLAN_ALIASES:
        return _PLAN_ALIASES[value]
    raise PlanParseError(f"unknown plan {raw!r}")


def parse_role(raw: object) -> Optional[Role]:
    """Only privileged roles matter to the gate; anything else is a regular user."""
    if not isinstance(raw, str):
        return None
    try:
        return Role(raw.strip().lower())
    except ValueError:
        return None


def has_plan(current: PlanTier, required: PlanTier) -> bool:
    return current.rank >= required.rank


def next_plan(current: PlanTier) -> Optional[PlanTier]:
    idx = PLAN_ORDER.index(current)
    return PLAN_ORDER[idx + 1] if idx + 1 < len(PLAN_ORDER) else None


@dataclass(frozen=True)
class PlanRequirement:
    tier: PlanTier
    allow_roles: FrozenSet[Role] = frozenset()
    kill_switch_flag: Optional[str] = None

    def bypass_roles(self) -> FrozenSet[Role]:
        return self.allow_roles | _ROLE_BYPASS[self.tier]


@dataclass
class PlanGuardContext:
    user_id: Optional[str]
    plan: PlanTier
    role: Optional[Role]
    flags: Dict[str, bool] = field(default_factory=dict)

    @property
    def is_privileged(self) -> bool:
        return self.role is not None

    @property
    def audience(self) -> FlagAudience:
        return FlagAudience(
            user_id=self.user_id or "anonymous",
            plan=self.plan.value,
            role=self.role.value if self.role else None,
        )


class ProfileSource(Protocol):
    def get_profile(self, user_id: str) -> Optional[Tuple[Optional[str], Optional[str]]]:
        ...


class EntitlementGate:
    def __init__(
        self,
        profiles: ProfileSource,
        flags: FlagResolver,
        upgrade_url_base: str = cfg_defaults.UPGRADE_URL_BASE,
        daily_mock_quota: Optional[Dict[str, Optional[int]]] = None,
    ) -> None:
        self.profiles = profiles
        self.flags = flags
        self.upgrade_url_base = upgrade_url_base
        self.daily_mock_quota = dict(daily_mock_quota or cfg_defaults.DAILY_MOCK_QUOTA)

    def upgrade_url(self, required: PlanTier) -> str:
        return f"{self.upgrade_url_base}?required={required.value}"

    def resolve(self, user_id: str) -> Tuple[PlanTier, Optional[Role]]:
        row = self.profiles.get_profile(user_id)
        if row is None:
            return PlanTier.FREE, None
        raw_plan, raw_role = row
        try:
            plan = parse_plan(raw_plan) if raw_plan is not None else PlanTier.FREE
        except PlanParseError as exc:
            log.error("profile %s carries an unparseable plan: %s", user_id, exc)
            raise InternalError("profile plan is invalid") from exc
        return plan, parse_role(raw_role)

    def authorize(self, user_id: Optional[str], requirement: PlanRequirement) -> PlanGuardContext:
        if requirement.tier == PlanTier.FREE:
            if not user_id:
                return PlanGuardContext(user_id=None, plan=PlanTier.FREE, role=None, flags=self._snapshot(None))
            # known callers still get their real plan for per-test checks and quotas
            plan, role = self.resolve(user_id)
            ctx = PlanGuardContext(user_id=user_id, plan=plan, role=role)
            ctx.flags = self._snapshot(ctx)
            return ctx

        if not user_id:
            raise AuthError("Not authenticated", requiredPlan=requirement.tier.value)

        plan, role = self.resolve(user_id)
        ctx = PlanGuardContext(user_id=user_id, plan=plan, role=role)

        if role is not None and role in requirement.bypass_roles():
            log.debug("role %s bypasses %s for %s", role.value, requirement.tier.value, user_id)
            ctx.flags = self._snapshot(ctx)
            return ctx

        if not has_plan(plan, requirement.tier):
            raise PlanRequiredError(
                required_plan=requirement.tier.value,
                current_plan=plan.value,
                upgrade_url=self.upgrade_url(requirement.tier),
            )

        if requirement.kill_switch_flag and self._kill_switch_tripped(requirement.kill_switch_flag, ctx):
            raise ServiceUnavailableError(
                reason="Feature disabled by kill-switch",
                flag=requirement.kill_switch_flag,
            )

        ctx.flags = self._snapshot(ctx)
        return ctx

    def require_tier(self, ctx: PlanGuardContext, required: PlanTier) -> None:
        """Per-resource check (e.g. a premium test) on top of the route requirement."""
        if ctx.role is not None and ctx.role in _ROLE_BYPASS[required]:
            return
        if not has_plan(ctx.plan, required):
            raise PlanRequiredError(
                required_plan=required.value,
                current_plan=ctx.plan.value,
                upgrade_url=self.upgrade_url(required),
            )

    def enforce_daily_mock_quota(self, ctx: PlanGuardContext, count_used: Callable[[], int]) -> None:
        if ctx.is_privileged:
            return
        limit = self.daily_mock_quota.get(ctx.plan.value)
        if limit is None:
            return
        try:
            used = int(count_used())
        except Exception:
            # counting is advisory; never block a start because the count failed
            log.warning("daily mock quota count failed for %s", ctx.user_id, exc_info=True)
            return
        if used >= limit:
            upgrade = next_plan(ctx.plan)
            raise QuotaExceededError(
                quota={"key": "dailyMocks", "limit": limit, "used": used, "remaining": 0},
                upgradePlan=upgrade.value if upgrade else None,
            )

    def _kill_switch_tripped(self, flag: str, ctx: PlanGuardContext) -> bool:
        try:
            return bool(self.flags.is_enabled(flag, ctx.audience))
        except Exception:
            log.error("kill switch lookup failed for %s; blocking request", flag, exc_info=True)
            return True

    def _snapshot(self, ctx: Optional[PlanGuardContext]) -> Dict[str, bool]:
        audience = ctx.audience if ctx else FlagAudience(user_id="anonymous", plan=PlanTier.FREE.value)
        try:
            return self.flags.snapshot(audience)
        except Exception:
            log.warning("flag snapshot unavailable", exc_info=True)
            return {}


__all__ = [
    "PlanTier",
    "Role",
    "PLAN_ORDER",
    "PlanParseError",
    "parse_plan",
    "parse_role",
    "has_plan",
    "next_plan",
    "PlanRequirement",
    "PlanGuardContext",
    "EntitlementGate",
]
