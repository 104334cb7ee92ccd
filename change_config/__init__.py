"""
change_config -- single public entrypoint for change-control configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  It loads ``defaults/catalogue.yaml`` (or a caller-supplied
    file), parses it into frozen dataclasses and returns a
    ``ChangeControlConfig`` carrying a deterministic checksum.

Architecture position:
    Configuration layer.  Sits above ``change_control``; the kernel never
    imports this package.  ``change_config.bridges`` turns the result into
    kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ValueError`` / ``KeyError`` -- structural errors.

Audit relevance:
    Each load emits a ``CHANGE_CONFIG_TRACE`` log entry with the config id,
    version and checksum, tying decisions to the configuration in force.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from change_config.loader import load_config
from change_config.schema import ChangeControlConfig

_logger = logging.getLogger("change_control.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "catalogue.yaml"

_cache: dict[Path, ChangeControlConfig] = {}
_cache_lock = threading.Lock()


def get_active_config(path: Path | str | None = None) -> ChangeControlConfig:
    """Load (once per path) and return the configuration.

    Args:
        path: YAML file to load. Defaults to ``defaults/catalogue.yaml``.
    """
    resolved = Path(path or DEFAULT_CONFIG_PATH).resolve()
    with _cache_lock:
        cached = _cache.get(resolved)
        if cached is not None:
            return cached

    config = load_config(resolved)

    _logger.info(
        "CHANGE_CONFIG_TRACE",
        extra={
            "trace_type": "CHANGE_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "nav_roots": len(config.navigation),
            "legacy_aliases": len(config.legacy_aliases),
        },
    )

    with _cache_lock:
        return _cache.setdefault(resolved, config)


def clear_config_cache() -> None:
    """Forget loaded configurations. FOR TESTING ONLY."""
    with _cache_lock:
        _cache.clear()


__all__ = ["ChangeControlConfig", "clear_config_cache", "get_active_config"]
