"""Environment variable lookup layered over an optional .env file."""

from __future__ import annotations

from dataclasses import dataclass
import functools
import io
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

# Process-wide properties populated from .env files on request.
_system_properties: dict[str, str] = {}
system_properties: Mapping[str, str] = MappingProxyType(_system_properties)


def get_system_property(name: str, default: str | None = None) -> str | None:
    return _system_properties.get(name, default)


def clear_system_properties() -> None:
    _system_properties.clear()


@dataclass(slots=True)
class EnvironmentOptions:
    """Where to find the .env file and how to treat its values."""

    populate_system_properties: bool = True
    dotenv_dir: str | Path = "./"
    dotenv_filename: str = ".env"
    # An environment variable set to "" falls through to the file when True.
    empty_is_missing: bool = False
    interpolate: bool = False

    @property
    def dotenv_path(self) -> Path:
        return Path(self.dotenv_dir) / self.dotenv_filename


def _decodable_lines(path: Path) -> str:
    lines = []
    for number, raw in enumerate(path.read_bytes().splitlines(keepends=True), start=1):
        try:
            lines.append(raw.decode("utf-8"))
        except UnicodeDecodeError:
            logger.warning("Skipping line %d of %s: not valid UTF-8", number, path)
    return "".join(lines)


def _read_dotenv(options: EnvironmentOptions) -> dict[str, str]:
    path = options.dotenv_path
    if not path.is_file():
        logger.debug("No .env file at %s, using an empty store", path)
        return {}

    # python-dotenv logs and skips lines it cannot parse.
    parsed = dotenv_values(
        stream=io.StringIO(_decodable_lines(path)),
        interpolate=options.interpolate,
    )
    values = {key: value for key, value in parsed.items() if value is not None}
    logger.debug("Loaded %d entries from %s", len(values), path)
    return values


class EnvironmentResolver:
    """Resolve variables from the process environment, then a .env file.

    The file is read once, at construction. A missing file is an empty store
    and malformed lines are skipped, so the same test suite runs with or
    without a local configuration file. The process environment is looked up
    on every call and always wins over the file.
    """

    def __init__(self, options: EnvironmentOptions | None = None, **overrides) -> None:
        if options is None:
            options = EnvironmentOptions(**overrides)
        elif overrides:
            raise TypeError("Pass either an EnvironmentOptions instance or keyword overrides")

        self._options = options
        self._values: Mapping[str, str] = MappingProxyType(_read_dotenv(options))

        if options.populate_system_properties:
            _system_properties.update(self._values)

    @property
    def populate_system_properties(self) -> bool:
        return self._options.populate_system_properties

    @property
    def dotenv_path(self) -> Path:
        return self._options.dotenv_path

    @property
    def values(self) -> Mapping[str, str]:
        """Read-only view of the entries parsed from the .env file."""

        return self._values

    def get(self, name: str, default: str | None = None) -> str | None:
        """Return the value of ``name``, or ``default`` when no source defines it.

        The process environment is consulted first, then the .env file.
        """

        value = self._from_environment(name)
        if value is not None:
            return value
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> str | None:
        return self.get(name)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self._from_environment(name) is not None or name in self._values

    def _from_environment(self, name: str) -> str | None:
        value = os.environ.get(name)
        if value == "" and self._options.empty_is_missing:
            return None
        return value

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dotenv_path={str(self.dotenv_path)!r})"


class TestEnvironment(EnvironmentResolver):
    """Resolver reading ``./.env`` and publishing it to the system properties."""

    # Keep pytest from collecting this class.
    __test__ = False

    def __init__(self, options: EnvironmentOptions | None = None) -> None:
        super().__init__(options or EnvironmentOptions())


@functools.cache
def get_test_environment() -> TestEnvironment:
    """Return the shared :class:`TestEnvironment`, created on first use."""

    return TestEnvironment()


__all__ = [
    "EnvironmentOptions",
    "EnvironmentResolver",
    "TestEnvironment",
    "clear_system_properties",
    "get_system_property",
    "get_test_environment",
    "system_properties",
]
