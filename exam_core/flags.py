from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol, Sequence, Tuple

FlagRow = Tuple[str, bool, Optional[str]]


@dataclass(frozen=True)
class FlagAudience:
    user_id: str
    plan: str
    role: Optional[str] = None


class FlagResolver(Protocol):
    def is_enabled(self, key: str, audience: FlagAudience) -> bool:
        ...

    def snapshot(self, audience: FlagAudience) -> Dict[str, bool]:
        ...


class FlagSource(Protocol):
    def list_flags(self) -> Sequence[FlagRow]:
        ...


def _targets(audience_plans: Optional[str], audience: FlagAudience) -> bool:
    if not audience_plans:
        return True
    plans = {p.strip().lower() for p in audience_plans.split(",") if p.strip()}
    return audience.plan in plans


class StoreFlagResolver:
    """Flags from the `feature_flags` table, with process-level forced switches.

    `forced` keys (from the KILL_SWITCHES setting) are on for every audience and
    win over the stored value.
    """

    def __init__(self, source: FlagSource, forced: Iterable[str] = ()) -> None:
        self.source = source
        self.forced = frozenset(forced)

    def is_enabled(self, key: str, audience: FlagAudience) -> bool:
        if key in self.forced:
            return True
        for flag_key, enabled, audience_plans in self.source.list_flags():
            if flag_key == key:
                return bool(enabled) and _targets(audience_plans, audience)
        return False

    def snapshot(self, audience: FlagAudience) -> Dict[str, bool]:
        out = {key: bool(enabled) and _targets(plans, audience) for key, enabled, plans in self.source.list_flags()}
        for key in self.forced:
            out[key] = True
        return out
