r"""Read and write ``.env``-style key/value files.

Values are written the way ``docker compose`` reads them: bare when they hold
no special characters, single-quoted (literal, never interpolated) otherwise,
and double-quoted with ``\``, ``\"`` and ``\$`` escapes only when the value
itself contains a single quote.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path

from ..templates import write_atomic

_KEY_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_NEEDS_QUOTES = re.compile(r"[\s#\"'$\\]")


class EnvFileError(RuntimeError):
    """Raised when an env file cannot be parsed or written."""


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring blanks and ``#`` comments."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export ") :].lstrip()
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not _KEY_PATTERN.match(key):
            continue
        values[key] = _unquote(value.strip())
    return values


def read_env(path: Path) -> dict[str, str]:
    """Return the parsed contents of *path*."""
    try:
        return parse_env(path.read_text(encoding="utf-8"))
    except UnicodeDecodeError as exc:
        raise EnvFileError(f"{path} is not valid UTF-8: {exc}") from exc


def render_env(values: Mapping[str, object], *, header: str | None = None) -> str:
    """Render *values* as env file text, preserving insertion order."""
    lines: list[str] = []
    if header:
        lines.extend(f"# {line}" if line else "#" for line in header.splitlines())
    for key, raw in values.items():
        if not _KEY_PATTERN.match(key):
            raise EnvFileError(f"Invalid env key {key!r}.")
        value = "" if raw is None else str(raw)
        if "\n" in value or "\r" in value:
            raise EnvFileError(f"Value for {key} must not contain newlines.")
        lines.append(f"{key}={_quote(value)}")
    return "\n".join(lines) + "\n"


def write_env(
    path: Path,
    values: Mapping[str, object],
    *,
    header: str | None = None,
    mode: int = 0o600,
) -> None:
    """Atomically write *values* to *path* with restrictive permissions."""
    write_atomic(path, render_env(values, header=header), mode=mode)


def _quote(value: str) -> str:
    # Single quotes are literal to docker compose; no interpolation happens.
    if not value or not _NEEDS_QUOTES.search(value):
        return value
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        inner = value[1:-1]
        return re.sub(r"\\(.)", r"\1", inner)
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    return value


__all__ = ["EnvFileError", "parse_env", "read_env", "render_env", "write_env"]
