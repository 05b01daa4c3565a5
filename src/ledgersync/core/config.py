from __future__ import annotations

from dataclasses import dataclass
import os


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Tunable matching and sync settings loaded at process startup."""

    definite_threshold: float = 0.88
    uncertain_floor: float = 0.55
    date_tolerance_days: int = 2
    window_padding_days: int = 5
    max_candidates_per_txn: int = 5
    verifier_batch_limit: int = 100
    verifier_model: str = "gpt-5-mini"
    verifier_timeout_seconds: float = 60.0
    aggregator_timeout_seconds: float = 30.0
    page_size: int = 500
    max_mutation_retries: int = 3
    stale_after_minutes: int = 60
    readiness_max_attempts: int = 6
    readiness_base_delay_seconds: float = 2.0


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_sync_config_from_env() -> SyncConfig:
    """Load sync config from LEDGERSYNC_* env vars and validate it."""
    definite = _float_env("LEDGERSYNC_DEFINITE_THRESHOLD", 0.88)
    floor = _float_env("LEDGERSYNC_UNCERTAIN_FLOOR", 0.55)
    if not 0.0 < definite <= 1.0:
        raise ValueError("LEDGERSYNC_DEFINITE_THRESHOLD must be in (0, 1]")
    if not 0.0 <= floor < definite:
        raise ValueError(
            "LEDGERSYNC_UNCERTAIN_FLOOR must be in [0, LEDGERSYNC_DEFINITE_THRESHOLD)"
        )

    batch_limit = _int_env("LEDGERSYNC_VERIFIER_BATCH_LIMIT", 100, minimum=1)
    page_size = _int_env("LEDGERSYNC_PAGE_SIZE", 500, minimum=1)
    if page_size > 500:
        raise ValueError("LEDGERSYNC_PAGE_SIZE must be <= 500")

    tolerance = _int_env("LEDGERSYNC_DATE_TOLERANCE_DAYS", 2)
    padding = _int_env("LEDGERSYNC_WINDOW_PADDING_DAYS", 5)
    if tolerance > padding:
        raise ValueError(
            "LEDGERSYNC_DATE_TOLERANCE_DAYS must be <= LEDGERSYNC_WINDOW_PADDING_DAYS"
        )

    readiness_delay = _float_env("LEDGERSYNC_READINESS_BASE_DELAY_SECONDS", 2.0)
    if readiness_delay < 0:
        raise ValueError("LEDGERSYNC_READINESS_BASE_DELAY_SECONDS must be >= 0")

    model = os.environ.get("LEDGERSYNC_VERIFIER_MODEL", "gpt-5-mini").strip()
    if not model:
        raise ValueError("LEDGERSYNC_VERIFIER_MODEL must not be empty")

    return SyncConfig(
        definite_threshold=definite,
        uncertain_floor=floor,
        date_tolerance_days=tolerance,
        window_padding_days=padding,
        max_candidates_per_txn=_int_env(
            "LEDGERSYNC_MAX_CANDIDATES_PER_TXN", 5, minimum=1
        ),
        verifier_batch_limit=batch_limit,
        verifier_model=model,
        verifier_timeout_seconds=_float_env(
            "LEDGERSYNC_VERIFIER_TIMEOUT_SECONDS", 60.0
        ),
        aggregator_timeout_seconds=_float_env(
            "LEDGERSYNC_AGGREGATOR_TIMEOUT_SECONDS", 30.0
        ),
        page_size=page_size,
        max_mutation_retries=_int_env("LEDGERSYNC_MAX_MUTATION_RETRIES", 3),
        stale_after_minutes=_int_env("LEDGERSYNC_STALE_AFTER_MINUTES", 60),
        readiness_max_attempts=_int_env(
            "LEDGERSYNC_READINESS_MAX_ATTEMPTS", 6, minimum=1
        ),
        readiness_base_delay_seconds=readiness_delay,
    )
