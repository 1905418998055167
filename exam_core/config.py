from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


LISTENING_MAX_SCORE: int = 40

DEFAULT_DURATION_SECONDS: Dict[str, int] = {
    "listening": 30 * 60,
    "reading": 60 * 60,
    "writing": 60 * 60,
    "speaking": 14 * 60,
}

MODULE_TIERS: Dict[str, str] = {
    "listening": "free",
    "reading": "free",
    "writing": "starter",
    "speaking": "booster",
}

# kill-switch flag checked on every mutating route of a module. Free-tier
# routes pass before the flag lookup, so these only trip once the module
# is raised above free through MODULE_TIER_<MODULE>.
MODULE_KILL_SWITCH: Dict[str, str] = {
    "listening": "listening_attempts",
    "reading": "reading_attempts",
    "writing": "writing_attempts",
    "speaking": "speaking_attempts",
}

# daily mock starts per plan; None is unlimited
DAILY_MOCK_QUOTA: Dict[str, int | None] = {
    "free": 1,
    "starter": 3,
    "booster": 10,
    "master": None,
}

ATTEMPT_GRACE_SECONDS: int = 5 * 60
DB_BUSY_TIMEOUT_MS: int = 5000
UPGRADE_URL_BASE: str = "/pricing"

ALLOWED_ORIGINS: Tuple[str, ...] = (
    "http://localhost:3000",
)

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    db_busy_timeout_ms: int = DB_BUSY_TIMEOUT_MS
    attempt_grace_seconds: int = ATTEMPT_GRACE_SECONDS
    module_tiers: Dict[str, str] = field(default_factory=lambda: dict(MODULE_TIERS))
    kill_switches: Tuple[str, ...] = ()
    worker_secret: str | None = None
    webhook_secret: str | None = None
    upgrade_url_base: str = UPGRADE_URL_BASE
    seed_catalog: bool = True
    log_level: str = "INFO"
    allowed_origins: Tuple[str, ...] = ALLOWED_ORIGINS

    @staticmethod
    def from_env() -> "Settings":
        data_dir = Path(_env_str("DATA_DIR", "data")).resolve()
        db_path = Path(_env_str("DB_PATH", str(data_dir / "exam.db")))
        tiers = {
            module: _env_str(f"MODULE_TIER_{module.upper()}", default)
            for module, default in MODULE_TIERS.items()
        }
        return Settings(
            data_dir=data_dir,
            db_path=db_path,
            db_busy_timeout_ms=_env_int("DB_BUSY_TIMEOUT_MS", DB_BUSY_TIMEOUT_MS),
            attempt_grace_seconds=_env_int("ATTEMPT_GRACE_SECONDS", ATTEMPT_GRACE_SECONDS),
            module_tiers=tiers,
            kill_switches=_env_list("KILL_SWITCHES", ()),
            worker_secret=os.getenv("WORKER_SECRET") or None,
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            upgrade_url_base=_env_str("UPGRADE_URL_BASE", UPGRADE_URL_BASE),
            seed_catalog=_env_bool("SEED_CATALOG", True),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            allowed_origins=_env_list("ALLOWED_ORIGINS", ALLOWED_ORIGINS),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
