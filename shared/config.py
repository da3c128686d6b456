"""
Binload Configuration
======================

Settings for the loading pipeline and its logging, kept in two dataclass
sections and read from TOML::

    [global]
    log_level = "INFO"
    log_file = "binload.log"
    log_json = true

    [loader]
    max_file_size = "64 MiB"
    max_symbols = 1000000
    load_section_bytes = true
    warn_on_hint_mismatch = true

Lookup order for :meth:`BinloadConfig.load`:

    1. the path given by the caller
    2. the file named by ``$BINLOAD_CONFIG``
    3. ``binload.toml`` in the working directory
    4. built-in defaults

``BINLOAD_*`` environment variables are applied last and win over the file.

References:
    - The Twelve-Factor App, III. Config. https://12factor.net/config
    - TOML v1.0.0. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

CONFIG_ENV_VAR = "BINLOAD_CONFIG"
LOCAL_CONFIG_NAME = "binload.toml"

LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")

_SIZE_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "kib": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "mib": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
    "gib": 1024**3,
}
_SIZE_RE = re.compile(r"^\s*(\d+)\s*([a-zA-Z]*)\s*$")

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off", ""})


def parse_size(value: int | str) -> int:
    """Convert ``4096``, ``"64k"`` or ``"256 MiB"`` to a byte count.

    Units are binary multiples; a bare number is bytes.

    Raises:
        ValueError: Unrecognised unit or malformed value.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value))
    if match is None:
        raise ValueError(f"invalid size: {value!r}")
    number, unit = match.groups()
    try:
        multiplier = _SIZE_UNITS[unit.lower()]
    except KeyError:
        raise ValueError(f"unknown size unit {unit!r} in {value!r}") from None
    return int(number) * multiplier


def _parse_bool(value: str) -> bool:
    word = value.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _require_bool(section: str, obj: Any, *names: str) -> None:
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, bool):
            raise ValueError(f"{section}.{name} must be true or false, got {value!r}")


# ========================== Loader Settings ================================


@dataclass(slots=True)
class LoaderConfig:
    """Limits and switches of the loading pipeline.

    ``max_file_size`` bounds how large a file the loader will map;
    ``max_symbols`` bounds a single symbol table, and larger tables are
    treated as corrupt.
    """

    max_file_size: int = 268_435_456  # 256 MiB
    max_symbols: int = 4_000_000
    load_section_bytes: bool = True
    warn_on_hint_mismatch: bool = True

    def __post_init__(self) -> None:
        self.max_file_size = parse_size(self.max_file_size)
        if self.max_file_size <= 0:
            raise ValueError("loader.max_file_size must be positive")
        if isinstance(self.max_symbols, bool) or not isinstance(self.max_symbols, int):
            raise ValueError(f"loader.max_symbols must be an integer, got {self.max_symbols!r}")
        if self.max_symbols <= 0:
            raise ValueError("loader.max_symbols must be positive")
        _require_bool("loader", self, "load_section_bytes", "warn_on_hint_mismatch")


# =========================== Global Settings ===============================


@dataclass(slots=True)
class GlobalConfig:
    """Logging verbosity and destination."""

    log_level: str = "WARNING"
    log_file: Optional[str] = None
    log_json: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        level = str(self.log_level).upper()
        if level not in LOG_LEVELS:
            raise ValueError(
                f"global.log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            )
        self.log_level = level
        if self.log_file is not None and not isinstance(self.log_file, str):
            raise ValueError(f"global.log_file must be a string, got {self.log_file!r}")
        _require_bool("global", self, "log_json", "debug")


# Environment variable -> (section attribute, field, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "BINLOAD_LOG_LEVEL": ("global_settings", "log_level", str),
    "BINLOAD_LOG_FILE": ("global_settings", "log_file", lambda value: value or None),
    "BINLOAD_DEBUG": ("global_settings", "debug", _parse_bool),
    "BINLOAD_MAX_FILE_SIZE": ("loader", "max_file_size", parse_size),
    "BINLOAD_MAX_SYMBOLS": ("loader", "max_symbols", int),
}


# =========================== Master Config =================================


@dataclass(slots=True)
class BinloadConfig:
    """Loader and global settings.

    Usage:
        >>> config = BinloadConfig.load()              # discovered or defaults
        >>> config = BinloadConfig.load("ci.toml")     # explicit file
        >>> config.loader.max_symbols
        4000000
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> BinloadConfig:
        """Build the configuration from a TOML file and the environment.

        Args:
            path: Configuration file.  When ``None`` the file is discovered
                as described in the module docstring.
            env: Environment to read overrides from (``os.environ`` by
                default).

        Raises:
            FileNotFoundError: An explicitly named file does not exist.
            ValueError: The file is not valid TOML or a setting is out of
                range.
        """
        env = os.environ if env is None else env
        config_path = cls.discover(path, env)

        raw: dict[str, Any] = {}
        if config_path is not None:
            with open(config_path, "rb") as fh:
                raw = tomllib.load(fh)

        global_data = _table(raw, "global")
        loader_data = _table(raw, "loader")
        sections = {"global_settings": global_data, "loader": loader_data}
        for var, (section, name, convert) in _ENV_OVERRIDES.items():
            if var in env:
                try:
                    sections[section][name] = convert(env[var])
                except ValueError as exc:
                    raise ValueError(f"{var}: {exc}") from exc

        return cls(
            global_settings=_build_section(GlobalConfig, global_data),
            loader=_build_section(LoaderConfig, loader_data),
        )

    @staticmethod
    def discover(
        path: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Optional[Path]:
        """Return the configuration file to read, or ``None`` for defaults."""
        env = os.environ if env is None else env
        named = path if path is not None else env.get(CONFIG_ENV_VAR)
        if named:
            named_path = Path(named)
            if not named_path.is_file():
                raise FileNotFoundError(f"Configuration file not found: {named_path}")
            return named_path
        local = Path.cwd() / LOCAL_CONFIG_NAME
        return local if local.is_file() else None

    def to_dict(self) -> dict[str, Any]:
        """The configuration tree as plain dictionaries."""
        return asdict(self)


def _build_section(section_cls: type, data: dict[str, Any]) -> Any:
    # Unknown keys are dropped so newer config files keep working.
    known = {f.name for f in fields(section_cls)}
    return section_cls(**{k: v for k, v in data.items() if k in known})



def _table(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{name}] must be a table, got {type(value).__name__}")
    return dict(value)
