"""Semantic version parsing and npm-style range matching."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import total_ordering
from typing import Literal

from seapack.errors import ResolutionError

VERSION_PATTERN = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)
PARTIAL_PATTERN = re.compile(
    r"^v?(?P<major>\d+|[xX*])(?:\.(?P<minor>\d+|[xX*]))?(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)
COMPARATOR_PATTERN = re.compile(r"^(?P<op>\^|~>?|>=|<=|>|<|=)?\s*(?P<version>\S+)$")
WILDCARDS = frozenset({"x", "X", "*"})

Operator = Literal[">=", ">", "<=", "<", "="]


@total_ordering
@dataclass(frozen=True, slots=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: str = ""

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    @property
    def core(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def _sort_key(self) -> tuple[int, int, int, int, tuple[tuple[int, int | str], ...]]:
        if not self.prerelease:
            return (*self.core, 1, ())
        identifiers: list[tuple[int, int | str]] = []
        for part in self.prerelease.split("."):
            # Numeric identifiers sort before alphanumeric ones.
            identifiers.append((0, int(part)) if part.isdigit() else (1, part))
        return (*self.core, 0, tuple(identifiers))


def parse_version(raw: str) -> Version:
    match = VERSION_PATTERN.fullmatch(raw.strip())
    if match is None:
        raise ResolutionError(
            f"Invalid version `{raw}`.",
            hint="Use MAJOR.MINOR.PATCH, optionally prefixed with `v`.",
            context={"operation": "parse_version", "version": raw},
        )
    return Version(
        major=int(match["major"]),
        minor=int(match["minor"]),
        patch=int(match["patch"]),
        prerelease=match["pre"] or "",
    )


def is_exact_version(raw: str) -> bool:
    return VERSION_PATTERN.fullmatch(raw.strip()) is not None


@dataclass(frozen=True, slots=True)
class Comparator:
    op: Operator
    version: Version

    def test(self, candidate: Version) -> bool:
        if self.op == "=":
            return candidate == self.version
        if self.op == ">=":
            return candidate >= self.version
        if self.op == ">":
            return candidate > self.version
        if self.op == "<=":
            return candidate <= self.version
        return candidate < self.version


@dataclass(frozen=True, slots=True)
class VersionRange:
    """Disjunction of comparator sets, e.g. ``^3.2.0 || 4.x``."""

    raw: str
    alternatives: tuple[tuple[Comparator, ...], ...]

    def contains(self, candidate: Version) -> bool:
        for comparators in self.alternatives:
            if not all(item.test(candidate) for item in comparators):
                continue
            if candidate.prerelease and not _allows_prerelease(comparators, candidate):
                continue
            return True
        return False


def parse_range(raw: str) -> VersionRange:
    text = raw.strip()
    alternatives: list[tuple[Comparator, ...]] = []
    for alternative in text.split("||"):
        alternatives.append(_parse_comparator_set(alternative.strip(), raw=raw))
    return VersionRange(raw=raw, alternatives=tuple(alternatives))


def satisfies(version: Version, constraint: str) -> bool:
    return parse_range(constraint).contains(version)


def max_satisfying(versions: Iterable[Version], constraint: str) -> Version | None:
    """Return the highest version matching ``constraint``, or ``None``."""
    version_range = parse_range(constraint)
    matching = [item for item in versions if version_range.contains(item)]
    return max(matching) if matching else None


def _allows_prerelease(comparators: tuple[Comparator, ...], candidate: Version) -> bool:
    return any(
        item.version.prerelease and item.version.core == candidate.core for item in comparators
    )


def _parse_comparator_set(text: str, *, raw: str) -> tuple[Comparator, ...]:
    if text in ("", "latest") or text in WILDCARDS:
        return (Comparator(">=", Version(0, 0, 0)),)

    hyphen = re.fullmatch(r"(\S+)\s+-\s+(\S+)", text)
    if hyphen is not None:
        lower = _expand_partial(hyphen.group(1), raw=raw)
        upper = _expand_partial(hyphen.group(2), raw=raw)
        return (*_lower_bound(">=", lower), *_upper_bound("<=", upper))

    comparators: list[Comparator] = []
    # Allow `>= 1.2.3` with a space between operator and version.
    tokens = re.sub(r"(\^|~>?|>=|<=|>|<|=)\s+", r"\1", text).split()
    for token in tokens:
        match = COMPARATOR_PATTERN.fullmatch(token)
        if match is None:
            raise _invalid_range(raw)
        op = match["op"] or ""
        partial = _expand_partial(match["version"], raw=raw)
        comparators.extend(_desugar(op, partial))
    return tuple(comparators)


@dataclass(frozen=True, slots=True)
class _Partial:
    major: int | None
    minor: int | None
    patch: int | None
    prerelease: str

    def floor(self) -> Version:
        return Version(self.major or 0, self.minor or 0, self.patch or 0, self.prerelease)


def _expand_partial(token: str, *, raw: str) -> _Partial:
    match = PARTIAL_PATTERN.fullmatch(token)
    if match is None:
        raise _invalid_range(raw)
    parts: list[int | None] = []
    wildcard_seen = False
    for name in ("major", "minor", "patch"):
        value = match[name]
        if value is None or value in WILDCARDS or wildcard_seen:
            wildcard_seen = True
            parts.append(None)
        else:
            parts.append(int(value))
    return _Partial(parts[0], parts[1], parts[2], match["pre"] or "")


def _desugar(op: str, partial: _Partial) -> tuple[Comparator, ...]:
    if partial.major is None:
        if op in ("<", ">"):
            # `<*` and `>*` can never match.
            return (Comparator("<", Version(0, 0, 0)),)
        return (Comparator(">=", Version(0, 0, 0)),)
    if op == "^":
        return _caret(partial)
    if op in ("~", "~>"):
        return _tilde(partial)
    if op in ("", "="):
        if partial.patch is not None:
            return (Comparator("=", partial.floor()),)
        return (*_lower_bound(">=", partial), *_upper_bound("<=", partial))
    if op in (">", ">="):
        return _lower_bound(op, partial)
    return _upper_bound(op, partial)


def _caret(partial: _Partial) -> tuple[Comparator, ...]:
    # A caret range stays on the minor line it names: `^3.2.0` is `>=3.2.0 <3.3.0`.
    floor = partial.floor()
    if partial.minor is None:
        ceiling = Version(floor.major + 1, 0, 0)
    elif floor.major == 0 and floor.minor == 0 and partial.patch is not None:
        ceiling = Version(0, 0, floor.patch + 1)
    else:
        ceiling = Version(floor.major, floor.minor + 1, 0)
    return (Comparator(">=", floor), Comparator("<", ceiling))


def _tilde(partial: _Partial) -> tuple[Comparator, ...]:
    floor = partial.floor()
    if partial.minor is None:
        ceiling = Version(floor.major + 1, 0, 0)
    else:
        ceiling = Version(floor.major, floor.minor + 1, 0)
    return (Comparator(">=", floor), Comparator("<", ceiling))


def _lower_bound(op: str, partial: _Partial) -> tuple[Comparator, ...]:
    if partial.major is None:
        return (Comparator(">=", Version(0, 0, 0)),)
    if op == ">=" or partial.patch is not None:
        return (Comparator(">=" if op == ">=" else ">", partial.floor()),)
    # `>1.2` means "above every 1.2.x".
    if partial.minor is None:
        return (Comparator(">=", Version(partial.major + 1, 0, 0)),)
    return (Comparator(">=", Version(partial.major, partial.minor + 1, 0)),)


def _upper_bound(op: str, partial: _Partial) -> tuple[Comparator, ...]:
    if partial.major is None:
        return ()
    if op == "<" or partial.patch is not None:
        return (Comparator("<" if op == "<" else "<=", partial.floor()),)
    # `<=1.2` means "up to and including every 1.2.x".
    if partial.minor is None:
        return (Comparator("<", Version(partial.major + 1, 0, 0)),)
    return (Comparator("<", Version(partial.major, partial.minor + 1, 0)),)


def _invalid_range(raw: str) -> ResolutionError:
    return ResolutionError(
        f"Invalid version constraint `{raw}`.",
        hint="Use an exact version or an npm-style range such as `^3.2.0`.",
        context={"operation": "parse_range", "constraint": raw},
    )
