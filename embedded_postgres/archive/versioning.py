"""Parse version requirements and select matching releases."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, TypeVar

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from embedded_postgres.errors import InvalidVersionRequirement


__all__ = [
    "RequirementKind",
    "VersionRequirement",
    "parse_version",
    "select_highest",
]

T = TypeVar("T")

_LATEST_ALIASES = {"", "*", "latest"}
_PARTIAL_PATTERN = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


class RequirementKind(str, Enum):
    """How a requirement constrains the version space."""

    LATEST = "latest"
    EXACT = "exact"
    RANGE = "range"


def parse_version(value: str) -> Version:
    """Return ``value`` as a :class:`Version`, accepting a leading ``v``."""

    text = value.strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion as exc:
        raise InvalidVersionRequirement(f"Invalid version: {value!r}") from exc


@dataclass(frozen=True)
class VersionRequirement:
    """An immutable constraint over semantic ``major.minor.patch`` versions."""

    text: str
    kind: RequirementKind
    specifier: SpecifierSet
    exact: Version | None = None

    @classmethod
    def latest(cls) -> "VersionRequirement":
        return cls("latest", RequirementKind.LATEST, SpecifierSet())

    @classmethod
    def parse(cls, value: "str | VersionRequirement | None") -> "VersionRequirement":
        """Parse ``value`` into a requirement.

        Accepted forms are ``latest`` (or ``*``), exact versions such as
        ``16.4.0``, ``=16.4.0`` or ``==16.4.0``, partial versions (``16``,
        ``16.4``) matching any later component, caret (``^16.4``) and tilde
        (``~16.4``) ranges, and PEP 440 specifier sets like ``>=15,<17``.
        """

        if isinstance(value, VersionRequirement):
            return value
        text = (value or "").strip()
        if text.lower() in _LATEST_ALIASES:
            return cls.latest()

        if text.startswith("=") and not text.startswith("=="):
            return cls._exact(text, text[1:])
        if text.startswith("==") and "*" not in text and "," not in text:
            return cls._exact(text, text[2:])
        if text.startswith("^"):
            return cls._caret(text)
        if text.startswith("~") and not text.startswith("~="):
            return cls._tilde(text)

        match = _PARTIAL_PATTERN.match(text)
        if match:
            major, minor, patch = match.groups()
            if patch is not None:
                return cls._exact(text, text)
            if minor is not None:
                lower = f"{major}.{minor}.0"
                upper = f"{major}.{int(minor) + 1}.0"
            else:
                lower = f"{major}.0.0"
                upper = f"{int(major) + 1}.0.0"
            return cls._range(text, f">={lower},<{upper}")

        return cls._range(text, text)

    @classmethod
    def _exact(cls, text: str, version_text: str) -> "VersionRequirement":
        version = parse_version(version_text)
        return cls(text, RequirementKind.EXACT, SpecifierSet(f"=={version}"), version)

    @classmethod
    def _range(cls, text: str, specifier: str) -> "VersionRequirement":
        try:
            parsed = SpecifierSet(specifier.replace(" ", ""))
        except InvalidSpecifier as exc:
            raise InvalidVersionRequirement(f"Invalid version requirement: {text!r}") from exc
        return cls(text, RequirementKind.RANGE, parsed)

    @classmethod
    def _caret(cls, text: str) -> "VersionRequirement":
        base = _components(text[1:], text)
        major, minor, patch = base
        lower = f"{major}.{minor}.{patch}"
        if major > 0:
            upper = f"{major + 1}.0.0"
        elif minor > 0:
            upper = f"0.{minor + 1}.0"
        else:
            upper = f"0.0.{patch + 1}"
        return cls._range(text, f">={lower},<{upper}")

    @classmethod
    def _tilde(cls, text: str) -> "VersionRequirement":
        major, minor, patch = _components(text[1:], text)
        return cls._range(text, f">={major}.{minor}.{patch},<{major}.{minor + 1}.0")

    def matches(self, version: Version) -> bool:
        if self.kind is RequirementKind.EXACT:
            return version == self.exact
        if version.is_prerelease or version.is_devrelease:
            return False
        if self.kind is RequirementKind.LATEST:
            return True
        return self.specifier.contains(version, prereleases=False)

    def __str__(self) -> str:
        return self.text


def _components(raw: str, original: str) -> tuple[int, int, int]:
    match = _PARTIAL_PATTERN.match(raw.strip())
    if not match:
        raise InvalidVersionRequirement(f"Invalid version requirement: {original!r}")
    major, minor, patch = match.groups()
    return int(major), int(minor or 0), int(patch or 0)


def select_highest(
    requirement: VersionRequirement,
    candidates: Iterable[T],
    *,
    version_of,
) -> T | None:
    """Return the candidate with the highest version satisfying ``requirement``."""

    best: T | None = None
    best_version: Version | None = None
    for candidate in candidates:
        version = version_of(candidate)
        if not requirement.matches(version):
            continue
        if best_version is None or version > best_version:
            best = candidate
            best_version = version
    return best
