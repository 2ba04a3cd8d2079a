import pytest

from seapack.errors import ResolutionError
from seapack.versions import (
    Version,
    is_exact_version,
    max_satisfying,
    parse_range,
    parse_version,
    satisfies,
)


def test_parse_version_accepts_leading_v_and_prerelease() -> None:
    assert parse_version("v22.3.0") == Version(22, 3, 0)
    assert parse_version("20.0.0-rc.1") == Version(20, 0, 0, "rc.1")
    assert str(parse_version("v1.2.3")) == "1.2.3"


def test_parse_version_rejects_partial_versions() -> None:
    with pytest.raises(ResolutionError):
        parse_version("22.3")


def test_prerelease_sorts_before_release() -> None:
    assert parse_version("1.0.0-alpha") < parse_version("1.0.0-alpha.1")
    assert parse_version("1.0.0-alpha.1") < parse_version("1.0.0-beta")
    assert parse_version("1.0.0-rc.1") < parse_version("1.0.0")
    assert parse_version("1.0.0-2") < parse_version("1.0.0-10")


def test_caret_stays_on_the_named_minor_line() -> None:
    versions = [parse_version(item) for item in ("3.1.9", "3.2.1", "3.3.0")]

    assert max_satisfying(versions, "^3.2.0") == Version(3, 2, 1)


def test_caret_with_major_only_spans_the_major() -> None:
    versions = [parse_version(item) for item in ("3.1.9", "3.9.0", "4.0.0")]

    assert max_satisfying(versions, "^3") == Version(3, 9, 0)


def test_caret_on_zero_zero_pins_patch() -> None:
    assert satisfies(Version(0, 0, 3), "^0.0.3")
    assert not satisfies(Version(0, 0, 4), "^0.0.3")


def test_tilde_allows_patch_updates() -> None:
    assert satisfies(Version(1, 2, 9), "~1.2.3")
    assert not satisfies(Version(1, 3, 0), "~1.2.3")
    assert not satisfies(Version(1, 2, 2), "~1.2.3")


def test_comparators_hyphen_ranges_and_alternatives() -> None:
    assert satisfies(Version(20, 5, 0), ">=20 <21")
    assert not satisfies(Version(21, 0, 0), ">=20 <21")
    assert satisfies(Version(1, 5, 0), "1.2 - 1.6")
    assert satisfies(Version(1, 6, 9), "1.2 - 1.6")
    assert satisfies(Version(4, 1, 0), "^3.2.0 || 4.x")
    assert satisfies(Version(18, 19, 1), ">= 18.0.0")


def test_wildcards_match_everything_but_prereleases() -> None:
    assert satisfies(Version(22, 3, 0), "*")
    assert satisfies(Version(22, 3, 0), "22.x")
    assert not satisfies(Version(22, 0, 0, "rc.1"), "22.x")


def test_prerelease_only_matches_when_named_on_same_core() -> None:
    assert satisfies(Version(22, 0, 0, "rc.2"), ">=22.0.0-rc.1")
    assert not satisfies(Version(22, 1, 0, "rc.1"), ">=22.0.0-rc.1")


def test_max_satisfying_returns_none_without_match() -> None:
    versions = [parse_version("18.0.0"), parse_version("20.0.0")]

    assert max_satisfying(versions, "^22.0.0") is None


def test_invalid_range_raises_resolution_error() -> None:
    with pytest.raises(ResolutionError) as excinfo:
        parse_range(">>1.2.3")

    assert excinfo.value.context["constraint"] == ">>1.2.3"


def test_is_exact_version() -> None:
    assert is_exact_version("22.3.0")
    assert is_exact_version("v22.3.0")
    assert not is_exact_version("^22.3.0")
    assert not is_exact_version("22")
