"""Connection settings loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from typing import Any, Iterator, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

RESOURCE_NAME = "db.properties"
SEARCH_PATHS: tuple[Path, ...] = (Path("."), Path.home() / ".config" / "pgfactory")

_KEYS = ("host", "port", "user", "password", "dbname", "schema")
_WHITESPACE = " \t\f"
_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class ConfigurationError(RuntimeError):
    """Raised when the configuration resource is missing, unreadable or invalid."""


class ConnectionSettings(BaseModel):
    """Database settings read once from the configuration resource."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    host: str = ""
    port: str = ""
    user: str = ""
    password: str = ""
    dbname: str = ""
    schema_name: str = Field(default="", alias="schema")

    @field_validator("host", "port", "user", "dbname", "schema_name", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return str(value).strip()
        return value

    @field_validator("password", mode="before")
    @classmethod
    def _password_text(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("port")
    @classmethod
    def _numeric_port(cls, value: str) -> str:
        if value and not value.isdigit():
            raise ValueError(f"port must be numeric, got {value!r}")
        return value

    @property
    def port_number(self) -> int | None:
        return int(self.port) if self.port else None

    def redacted(self) -> dict[str, str]:
        """Settings safe to log: the password is masked."""

        data = self.model_dump(by_alias=True)
        if data["password"]:
            data["password"] = "****"
        return data


def locate_resource(
    name: str = RESOURCE_NAME,
    search_paths: tuple[Path, ...] | None = None,
) -> Path:
    """Return the first existing ``name`` under the search paths."""

    paths = SEARCH_PATHS if search_paths is None else search_paths
    for directory in paths:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    searched = ", ".join(str(directory) for directory in paths) or "<none>"
    raise ConfigurationError(f"{name} file could not be found (searched: {searched})")


def load_settings(source: Path | str | None = None) -> ConnectionSettings:
    """Load settings from ``source`` or the located resource.

    ``.toml`` files may hold the keys at the top level or under a
    ``[database]`` table; anything else is read as a properties file.
    """

    path = Path(source) if source is not None else locate_resource()
    try:
        if path.suffix == ".toml":
            data = _read_toml(path)
        else:
            data = parse_properties(path.read_text(encoding="latin-1"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"{path} file could not be found") from exc
    except (tomllib.TOMLDecodeError, OSError, ValueError) as exc:
        raise ConfigurationError(f"{path} could not be read: {exc}") from exc

    try:
        return ConnectionSettings(**{key: data[key] for key in _KEYS if key in data})
    except ValidationError as exc:
        raise ConfigurationError(f"{path} holds invalid settings: {exc}") from exc


def parse_properties(text: str) -> dict[str, str]:
    """Parse text in ``java.util.Properties`` format.

    Keys end at the first unescaped ``=``, ``:`` or whitespace. Lines that
    end in an odd number of backslashes continue on the next line, and
    backslash escapes (including ``\\uXXXX``) are decoded in keys and values.
    """

    values: dict[str, str] = {}
    for line in _logical_lines(text):
        key_end = _key_end(line)
        rest = line[key_end:].lstrip(_WHITESPACE)
        if rest[:1] in ("=", ":"):
            rest = rest[1:].lstrip(_WHITESPACE)
        values[_unescape(line[:key_end])] = _unescape(rest)
    return values


def _logical_lines(text: str) -> Iterator[str]:
    pending: str | None = None
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw.lstrip(_WHITESPACE)
        if pending is None:
            if not line or line[0] in "#!":
                continue
        else:
            line = pending + line
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2:
            pending = line[:-1]
            continue
        pending = None
        yield line
    if pending:
        yield pending


def _key_end(line: str) -> int:
    idx = 0
    while idx < len(line):
        char = line[idx]
        if char == "\\":
            idx += 2
            continue
        if char in "=:" or char in _WHITESPACE:
            return idx
        idx += 1
    return len(line)


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    out: list[str] = []
    idx = 0
    while idx < len(value):
        char = value[idx]
        if char != "\\" or idx + 1 >= len(value):
            out.append(char)
            idx += 1
            continue
        escaped = value[idx + 1]
        if escaped == "u":
            digits = value[idx + 2 : idx + 6]
            if len(digits) != 4 or not _HEX_DIGITS.issuperset(digits):
                raise ValueError(f"malformed \\uXXXX escape: \\u{digits}")
            out.append(chr(int(digits, 16)))
            idx += 6
            continue
        out.append(_ESCAPES.get(escaped, escaped))
        idx += 2
    return "".join(out)


def _read_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    section = raw.get("database")
    if isinstance(section, dict):
        return section
    return raw


__all__ = [
    "ConfigurationError",
    "ConnectionSettings",
    "RESOURCE_NAME",
    "SEARCH_PATHS",
    "load_settings",
    "locate_resource",
    "parse_properties",
]
