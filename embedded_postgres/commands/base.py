"""Shared pieces of the command builders."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Mapping, Sequence, TypeVar

from embedded_postgres.errors import InvalidConfiguration

if TYPE_CHECKING:
    from embedded_postgres.lifecycle.config import InstanceConfiguration


def join_arguments(arguments: Sequence[str], *, windows: bool | None = None) -> str:
    """Quote ``arguments`` into one string for the host's command-line convention."""

    if windows is None:
        windows = os.name == "nt"
    if windows:
        return subprocess.list2cmdline(list(arguments))
    return shlex.join(arguments)


def absolute(path: str | os.PathLike[str]) -> str:
    return str(Path(path).expanduser().absolute())


@dataclass(frozen=True)
class Invocation:
    """Fully rendered executable call: program, arguments and environment."""

    program: Path
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [str(self.program), *self.args]

    def environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return ``base`` (the current environment by default) plus overrides."""

        merged = dict(os.environ if base is None else base)
        merged.update(self.env)
        return merged

    def to_command_string(self, *, windows: bool | None = None) -> str:
        return join_arguments(self.argv, windows=windows)

    def __str__(self) -> str:
        return self.to_command_string()


class CommandBuilder:
    """Base class for typed option sets of one PostgreSQL executable.

    Subclasses are frozen dataclasses; they render their options through
    :meth:`arguments` and :meth:`environment` and reject invalid combinations
    in :meth:`validate`.
    """

    program_name: ClassVar[str] = ""
    exclusive_options: ClassVar[tuple[tuple[str, str], ...]] = ()

    def arguments(self) -> list[str]:
        raise NotImplementedError

    def environment(self) -> dict[str, str]:
        return {}

    def validate(self) -> None:
        for first, second in self.exclusive_options:
            if _is_set(getattr(self, first)) and _is_set(getattr(self, second)):
                raise InvalidConfiguration(
                    f"{self.program_name}: options '{first}' and '{second}' are mutually exclusive"
                )

    def build(self, program_dir: "str | os.PathLike[str] | None" = None) -> Invocation:
        """Validate the options and render an :class:`Invocation`.

        ``program_dir`` may be a directory or anything with a ``bin_dir``
        attribute, such as an installation.
        """

        self.validate()
        return Invocation(
            program=self.program_path(program_dir),
            args=tuple(self.arguments()),
            env=self.environment(),
        )

    def program_path(self, program_dir: "str | os.PathLike[str] | None" = None) -> Path:
        suffix = ".exe" if os.name == "nt" else ""
        name = f"{self.program_name}{suffix}"
        directory = getattr(program_dir, "bin_dir", program_dir)
        if directory is None:
            return Path(name)
        return Path(absolute(directory)) / name

    def options(self) -> dict[str, object]:
        return {item.name: getattr(self, item.name) for item in fields(self)}  # type: ignore[arg-type]


def _is_set(value: object) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (str, bytes, list, tuple, dict)) and not value:
        return False
    return True


def flag(args: list[str], enabled: bool, name: str) -> None:
    if enabled:
        args.append(name)


def option(args: list[str], name: str, value: object) -> None:
    if value is None:
        return
    if isinstance(value, Path):
        rendered = absolute(value)
    else:
        rendered = str(value)
    args.extend((name, rendered))


def settings_arguments(name: str, settings: Mapping[str, object] | Iterable[tuple[str, object]]) -> list[str]:
    """Render ``name key=value`` pairs, e.g. ``-c shared_buffers=128MB``."""

    items = settings.items() if isinstance(settings, Mapping) else settings
    rendered: list[str] = []
    for key, value in items:
        key_text = str(key).strip()
        if not key_text or "=" in key_text:
            raise InvalidConfiguration(f"Invalid setting name: {key!r}")
        rendered.extend((name, f"{key_text}={_setting_value(value)}"))
    return rendered


def _setting_value(value: object) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, Path):
        return absolute(value)
    return str(value)


_C = TypeVar("_C", bound="ConnectionOptions")


@dataclass(frozen=True)
class ConnectionOptions:
    """Connection options shared by the client executables."""

    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    no_password: bool = False
    force_password_prompt: bool = False

    @classmethod
    def from_configuration(cls: type[_C], configuration: "InstanceConfiguration", **options: Any) -> _C:
        """Build a client command that connects to the instance described by ``configuration``."""

        return cls(
            host=configuration.host,
            port=configuration.port,
            username=configuration.username,
            password=configuration.password,
            **options,
        )

    def connection_arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--host", _host_value(self.host))
        option(args, "--port", self.port)
        option(args, "--username", self.username)
        flag(args, self.no_password, "--no-password")
        flag(args, self.force_password_prompt, "--password")
        return args

    def connection_environment(self) -> dict[str, str]:
        if self.password is None:
            return {}
        return {"PGPASSWORD": self.password}


def _host_value(host: str | None) -> str | None:
    # Socket directories are paths and must be absolute for child processes.
    if host and (host.startswith("/") or host.startswith(".") or "\\" in host):
        return absolute(host)
    return host


__all__ = [
    "CommandBuilder",
    "ConnectionOptions",
    "Invocation",
    "absolute",
    "flag",
    "join_arguments",
    "option",
    "settings_arguments",
]
