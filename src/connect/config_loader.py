"""Load and validate per-source polling timings.

The timings live in ``driver_config.yaml`` alongside this module.  They are
loaded once and cached; the core never applies defaults of its own, so every
value the driver needs comes from here (timings) or from ``src.config``
(credentials, timezone offset).

Usage::

    from src.connect.config_loader import get_driver_config

    config = get_driver_config()
    driver_config = config.driver_config_for("glooko", timezone_offset_ms=0)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.connect.base import BackoffSpec, DriverConfig

logger = logging.getLogger("connect.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "driver_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceTimings:
    """Session and polling timings for one source."""

    refresh_delay_ms: int
    expire_delay_ms: int
    expected_data_interval_ms: int
    backoff: BackoffSpec


@dataclass
class ConnectConfig:
    """Complete, validated driver configuration.

    Attributes:
        version: Config schema version string.
        sources: Timings keyed by source slug (e.g. 'glooko').
    """

    version: str
    sources: dict[str, SourceTimings]
    _raw: dict = field(default_factory=dict, repr=False)

    def timings(self, source: str) -> SourceTimings:
        """Return the timings for a source.

        Raises:
            KeyError: If the source is not configured.
        """
        if source not in self.sources:
            raise KeyError(
                f"No timings configured for source '{source}'. "
                f"Available: {list(self.sources)}"
            )
        return self.sources[source]

    def driver_config_for(self, source: str, timezone_offset_ms: int) -> DriverConfig:
        """Combine a source's timings with the user's timezone offset."""
        t = self.timings(source)
        return DriverConfig(
            refresh_delay_ms=t.refresh_delay_ms,
            expire_delay_ms=t.expire_delay_ms,
            expected_data_interval_ms=t.expected_data_interval_ms,
            backoff=t.backoff,
            timezone_offset_ms=timezone_offset_ms,
        )


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when driver_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Driver config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> ConnectConfig:
    """Validate the raw YAML dict and construct a ConnectConfig.

    Every timing is required; nothing is defaulted.

    Raises:
        ConfigValidationError: Listing every missing or invalid value.
    """
    errors: list[str] = []

    def _positive_int(d: dict, key: str, section: str) -> int:
        if key not in d:
            errors.append(f"Missing required key '{key}' in section '{section}'")
            return 0
        value = d[key]
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{section}.{key} must be an integer, got {value!r}")
            return 0
        if value <= 0:
            errors.append(f"{section}.{key} must be positive, got {value}")
        return value

    version = str(raw.get("version", "1.0"))

    sources_raw: Any = raw.get("sources")
    if not sources_raw or not isinstance(sources_raw, dict):
        errors.append("'sources' section is missing or empty")
        sources_raw = {}

    sources: dict[str, SourceTimings] = {}
    for name, cfg in sources_raw.items():
        section = f"sources.{name}"
        if not isinstance(cfg, dict):
            errors.append(f"{section} must be a mapping")
            continue

        refresh = _positive_int(cfg, "refresh_delay_ms", section)
        expire = _positive_int(cfg, "expire_delay_ms", section)
        interval = _positive_int(cfg, "expected_data_interval_ms", section)
        if refresh and expire and refresh >= expire:
            errors.append(
                f"{section}.refresh_delay_ms ({refresh}) must be lower than "
                f"expire_delay_ms ({expire})"
            )

        backoff_raw = cfg.get("backoff")
        if not isinstance(backoff_raw, dict):
            errors.append(f"{section}.backoff must be a mapping")
            backoff_raw = {}
        base = _positive_int(backoff_raw, "base_interval_ms", f"{section}.backoff")
        attempts = _positive_int(backoff_raw, "max_attempts", f"{section}.backoff")

        sources[name] = SourceTimings(
            refresh_delay_ms=refresh,
            expire_delay_ms=expire,
            expected_data_interval_ms=interval,
            backoff=BackoffSpec(base_interval_ms=base, max_attempts=attempts),
        )

    if errors:
        raise ConfigValidationError(
            f"driver_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ConnectConfig(version=version, sources=sources, _raw=raw)


def load_driver_config(path: Path | None = None) -> ConnectConfig:
    """Load and validate the driver config from disk.

    Args:
        path: Override path to YAML. Uses the bundled driver_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded driver config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_config: ConnectConfig | None = None
_config_lock = threading.Lock()


def get_driver_config(path: Path | None = None) -> ConnectConfig:
    """Return the global ConnectConfig singleton, loading it on first call.

    Thread-safe.  ``path`` only matters for the first call.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_driver_config(path)
    return _config
