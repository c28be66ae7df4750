from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .errors import ConfigError


def parse_config_lines(lines: Iterable[str], source: str = "<config>") -> dict[str, str]:
    """Parse `KEY=value` lines into an ordered mapping.

    Blank lines and lines starting with `#` are skipped. Keys and values are
    stripped, a value may be empty, and a repeated key keeps its last value.
    A non-blank line without `=` or with an empty key is an error.
    """

    entries: dict[str, str] = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep:
            raise ConfigError(f"{source}:{lineno}: expected KEY=value, got {line!r}")
        if not key:
            raise ConfigError(f"{source}:{lineno}: missing key before '='")
        entries.pop(key, None)
        entries[key] = value.strip()
    return entries


def read_config_file(path: str | Path) -> dict[str, str]:
    """Read a `KEY=value` settings file."""

    if not str(path):
        raise ConfigError("Config file path is empty")
    in_path = Path(path)
    try:
        with in_path.open("r", encoding="utf-8") as f:
            return parse_config_lines(f, source=str(in_path))
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {in_path}: {exc}") from exc
