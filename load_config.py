"""
Settings, duration parsing and logging setup shared by every module.
"""

import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler

from load_errors import InvalidConfig

console = Console()

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_PRESET = "parallel-endpoints"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Numbers are taken as seconds. Strings follow the k6 notation: one or more
    number+unit parts, e.g. "500ms", "30s", "2m", "1m30s", "1h".
    """
    if isinstance(value, bool):
        raise InvalidConfig(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise InvalidConfig(f"invalid duration: {value!r}")

    text = value.strip().lower()
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(number):
            raise InvalidConfig(f"invalid duration: {value!r}")
        return number

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise InvalidConfig(f"invalid duration: {value!r}")
    return total


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    return parse_duration(raw)


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfig(f"{key} must be an integer, got {raw!r}") from None


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise InvalidConfig(f"{key} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Run-wide settings. Scenario definitions live in the presets."""
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_connections: int = 100
    verify_ssl: bool = True
    log_level: str = "INFO"
    preset: str = DEFAULT_PRESET
    report_path: Optional[str] = None

    def __post_init__(self):
        if not self.base_url.startswith(("http://", "https://")):
            raise InvalidConfig(f"base URL must be http(s), got {self.base_url!r}")
        if self.request_timeout <= 0:
            raise InvalidConfig(f"request timeout must be positive, got {self.request_timeout}")
        if self.connect_timeout <= 0:
            raise InvalidConfig(f"connect timeout must be positive, got {self.connect_timeout}")
        if self.max_connections < 1:
            raise InvalidConfig(f"max connections must be >= 1, got {self.max_connections}")
        if logging.getLevelName(self.log_level.upper()) not in (
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL
        ):
            raise InvalidConfig(f"unknown log level: {self.log_level!r}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get("BASE_URL") or DEFAULT_BASE_URL,
            request_timeout=_env_float(env, "LOADGEN_TIMEOUT", 30.0),
            connect_timeout=_env_float(env, "LOADGEN_CONNECT_TIMEOUT", 10.0),
            max_connections=_env_int(env, "LOADGEN_MAX_CONNECTIONS", 100),
            verify_ssl=_env_bool(env, "LOADGEN_VERIFY_SSL", True),
            log_level=env.get("LOADGEN_LOG_LEVEL") or "INFO",
            preset=env.get("LOADGEN_PRESET") or DEFAULT_PRESET,
            report_path=env.get("LOADGEN_REPORT") or None,
        )


def configure_logging(level: str = "INFO") -> None:
    """Route log records through rich, on the same console as the report."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    root.addHandler(handler)
    root.setLevel(level.upper())
    # aiohttp is chatty at DEBUG under load
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
