from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ValidationError

DEFAULT_CONFIG = Path("/etc/marionette/main.toml")
LOG_FORMAT = "%(levelname)s %(name)s - %(message)s"


@dataclass
class MarionetteConfig:
    max_concurrency: int = 5
    timeout: Optional[float] = None
    retries: int = 0
    retry_delay: float = 1.0
    check_mode: bool = False
    diff_mode: bool = False
    log_level: str = "INFO"
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)


def load_config(path: Path = DEFAULT_CONFIG) -> MarionetteConfig:
    path = Path(path)
    if not path.exists():
        return MarionetteConfig()
    data = tomllib.loads(path.read_text())
    defaults = data.get("defaults", {})
    timeout = defaults.get("timeout")
    config = MarionetteConfig(
        max_concurrency=_int(defaults, "max_concurrency", 5),
        timeout=float(timeout) if timeout else None,
        retries=_int(defaults, "retries", 0),
        retry_delay=float(defaults.get("retry_delay", 1.0)),
        check_mode=bool(defaults.get("check_mode", False)),
        diff_mode=bool(defaults.get("diff_mode", False)),
        log_level=str(defaults.get("log_level", "INFO")),
        plugin_dirs=[Path(p) for p in defaults.get("plugin_dirs", [])],
        plugin_modules=[str(m) for m in defaults.get("plugin_modules", [])],
    )
    if config.max_concurrency < 1:
        raise ValidationError("max_concurrency", config.max_concurrency, "must be at least 1")
    if config.retries < 0:
        raise ValidationError("retries", config.retries, "must not be negative")
    return config


def _int(table: dict[str, Any], key: str, default: int) -> int:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(key, value, "expected an integer")
    return value


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
