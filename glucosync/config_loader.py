"""Load, validate, and hot-reload the GlucoSync pipeline configuration.

The config lives in ``pipeline_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_pipeline_config()`` to
re-read from disk after an edit, with no restart required.

Usage::

    from glucosync.config_loader import get_pipeline_config

    config = get_pipeline_config()
    config.split_offset          # timedelta(hours=3, minutes=15)
    config.sync.max_consecutive_errors   # 3
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("glucosync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "pipeline_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class OfficialFeedConfig:
    """Regulated (delayed) feed settings."""

    environments: dict[str, str]
    publication_delay_minutes: float = 180
    max_window_days: int = 30
    token_refresh_buffer_seconds: int = 300
    request_timeout_seconds: float = 30

    @property
    def publication_delay(self) -> timedelta:
        return timedelta(minutes=self.publication_delay_minutes)

    @property
    def max_window(self) -> timedelta:
        return timedelta(days=self.max_window_days)

    def base_url(self, environment: str) -> str:
        try:
            return self.environments[environment]
        except KeyError:
            raise KeyError(
                f"Unknown official environment '{environment}'. "
                f"Available: {list(self.environments)}"
            ) from None


@dataclass
class InformalFeedConfig:
    """Low-latency session feed settings."""

    servers: dict[str, str]
    session_validity_hours: float = 24
    session_refresh_buffer_minutes: float = 10
    latest_lookback_minutes: int = 60
    max_readings: int = 288
    request_timeout_seconds: float = 30

    @property
    def session_validity(self) -> timedelta:
        return timedelta(hours=self.session_validity_hours)

    @property
    def session_refresh_buffer(self) -> timedelta:
        return timedelta(minutes=self.session_refresh_buffer_minutes)

    def base_url(self, server: str) -> str:
        try:
            return self.servers[server]
        except KeyError:
            raise KeyError(
                f"Unknown informal server '{server}'. Available: {list(self.servers)}"
            ) from None


@dataclass
class HybridConfig:
    safety_margin_minutes: float = 15

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(minutes=self.safety_margin_minutes)


@dataclass
class StoreConfig:
    retention_days: int = 180
    duplicate_tolerance_seconds: float = 1

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def duplicate_tolerance(self) -> timedelta:
        return timedelta(seconds=self.duplicate_tolerance_seconds)


@dataclass
class SyncConfig:
    """Polling loop bounds.  Seconds are floats so tests can run fast loops."""

    live_interval_seconds: float = 60
    idle_interval_seconds: float = 300
    max_interval_seconds: float = 900
    live_interest_window_seconds: float = 300
    rate_limit_backoff_factor: float = 2.0
    max_run_minutes: float = 60
    max_consecutive_errors: int = 3
    foreground_debounce_seconds: float = 2

    @property
    def max_run_seconds(self) -> float:
        return self.max_run_minutes * 60


@dataclass
class BackfillConfig:
    batch_days: int = 30
    rate_limit_ms: int = 500


@dataclass
class PipelineConfig:
    """Complete, validated pipeline configuration.

    This is the single in-memory representation of pipeline_config.yaml.

    Attributes:
        version:  Config schema version string.
        official: Official feed client settings.
        informal: Informal feed client settings.
        hybrid:   Split-point settings.
        store:    Retention and duplicate tolerance.
        sync:     Coordinator loop bounds.
        backfill: Historical import batching.
    """

    version: str
    official: OfficialFeedConfig
    informal: InformalFeedConfig
    hybrid: HybridConfig
    store: StoreConfig
    sync: SyncConfig
    backfill: BackfillConfig
    _raw: dict = field(default_factory=dict, repr=False)

    @property
    def split_offset(self) -> timedelta:
        """How far behind "now" the hybrid split point sits."""
        return self.official.publication_delay + self.hybrid.safety_margin


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when pipeline_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> PipelineConfig:
    """Validate the raw YAML dict and construct a PipelineConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _number(section: dict, section_name: str, key: str, default: Any, cast=float, minimum: float = 0.0, strict: bool = True) -> Any:
        value = section.get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{section_name}.{key} must be a number, got {value!r}")
            return cast(default)
        if (strict and number <= minimum) or (not strict and number < minimum):
            bound = ">" if strict else ">="
            errors.append(f"{section_name}.{key} = {number} must be {bound} {minimum}")
        return number

    def _urls(section: dict, section_name: str, key: str) -> dict[str, str]:
        value = section.get(key) or {}
        if not isinstance(value, dict) or not value:
            errors.append(f"{section_name}.{key} must be a non-empty mapping of name→URL")
            return {}
        urls: dict[str, str] = {}
        for name, url in value.items():
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                errors.append(f"{section_name}.{key}.{name} is not an http(s) URL: {url!r}")
                continue
            urls[str(name)] = url.rstrip("/")
        return urls

    version = str(raw.get("version", "1.0"))

    # ── Official feed ──
    of_raw = _section("official")
    official = OfficialFeedConfig(
        environments=_urls(of_raw, "official", "environments"),
        publication_delay_minutes=_number(of_raw, "official", "publication_delay_minutes", 180, strict=False),
        max_window_days=_number(of_raw, "official", "max_window_days", 30, cast=int),
        token_refresh_buffer_seconds=_number(of_raw, "official", "token_refresh_buffer_seconds", 300, cast=int, strict=False),
        request_timeout_seconds=_number(of_raw, "official", "request_timeout_seconds", 30),
    )

    # ── Informal feed ──
    if_raw = _section("informal")
    informal = InformalFeedConfig(
        servers=_urls(if_raw, "informal", "servers"),
        session_validity_hours=_number(if_raw, "informal", "session_validity_hours", 24),
        session_refresh_buffer_minutes=_number(if_raw, "informal", "session_refresh_buffer_minutes", 10, strict=False),
        latest_lookback_minutes=_number(if_raw, "informal", "latest_lookback_minutes", 60, cast=int),
        max_readings=_number(if_raw, "informal", "max_readings", 288, cast=int),
        request_timeout_seconds=_number(if_raw, "informal", "request_timeout_seconds", 30),
    )
    if informal.session_refresh_buffer >= informal.session_validity:
        errors.append("informal.session_refresh_buffer_minutes must be shorter than the session validity")

    # ── Hybrid ──
    hy_raw = _section("hybrid")
    hybrid = HybridConfig(
        safety_margin_minutes=_number(hy_raw, "hybrid", "safety_margin_minutes", 15, strict=False),
    )

    # ── Store ──
    st_raw = _section("store")
    store = StoreConfig(
        retention_days=_number(st_raw, "store", "retention_days", 180, cast=int),
        duplicate_tolerance_seconds=_number(st_raw, "store", "duplicate_tolerance_seconds", 1, strict=False),
    )

    # ── Sync loop ──
    sy_raw = _section("sync")
    sync = SyncConfig(
        live_interval_seconds=_number(sy_raw, "sync", "live_interval_seconds", 60),
        idle_interval_seconds=_number(sy_raw, "sync", "idle_interval_seconds", 300),
        max_interval_seconds=_number(sy_raw, "sync", "max_interval_seconds", 900),
        live_interest_window_seconds=_number(sy_raw, "sync", "live_interest_window_seconds", 300, strict=False),
        rate_limit_backoff_factor=_number(sy_raw, "sync", "rate_limit_backoff_factor", 2.0, minimum=1.0, strict=False),
        max_run_minutes=_number(sy_raw, "sync", "max_run_minutes", 60),
        max_consecutive_errors=_number(sy_raw, "sync", "max_consecutive_errors", 3, cast=int),
        foreground_debounce_seconds=_number(sy_raw, "sync", "foreground_debounce_seconds", 2, strict=False),
    )
    if sync.live_interval_seconds > sync.idle_interval_seconds:
        errors.append("sync.live_interval_seconds must not exceed sync.idle_interval_seconds")
    if sync.idle_interval_seconds > sync.max_interval_seconds:
        errors.append("sync.idle_interval_seconds must not exceed sync.max_interval_seconds")

    # ── Backfill ──
    bf_raw = _section("backfill")
    backfill = BackfillConfig(
        batch_days=_number(bf_raw, "backfill", "batch_days", 30, cast=int),
        rate_limit_ms=_number(bf_raw, "backfill", "rate_limit_ms", 500, cast=int, strict=False),
    )
    if backfill.batch_days > official.max_window_days:
        logger.warning(
            "backfill.batch_days (%d) exceeds official.max_window_days (%d); "
            "official requests will be split further.",
            backfill.batch_days,
            official.max_window_days,
        )

    if errors:
        raise ConfigValidationError(
            f"pipeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=version,
        official=official,
        informal=informal,
        hybrid=hybrid,
        store=store,
        sync=sync,
        backfill=backfill,
        _raw=raw,
    )


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled pipeline_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded pipeline config v%s from %s", config.version, target)
    return config


def build_pipeline_config(overrides: dict | None = None) -> PipelineConfig:
    """Bundled config with per-section ``overrides`` merged on top.

    Handy for tests and for callers that tune a single knob::

        build_pipeline_config({"sync": {"max_consecutive_errors": 5}})
    """
    raw = _load_yaml(_CONFIG_PATH)
    for section, values in (overrides or {}).items():
        if isinstance(values, dict):
            merged = dict(raw.get(section) or {})
            merged.update(values)
            raw[section] = merged
        else:
            raw[section] = values
    return _validate_and_build(raw)


# ---------------------------------------------------------------------------
# Global cache with hot-reload support
# ---------------------------------------------------------------------------

_config: PipelineConfig | None = None
_config_lock = threading.Lock()


def get_pipeline_config() -> PipelineConfig:
    """Return the cached PipelineConfig, loading it on first call.  Thread-safe."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_pipeline_config()
    return _config


def reload_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Reload the config from disk and replace the cached instance.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_pipeline_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded pipeline config: %s → %s", old_version, new_config.version)
    return new_config
