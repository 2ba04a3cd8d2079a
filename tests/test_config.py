from pathlib import Path

import pytest

from seapack.config import DEFAULT_DIST_URL, Settings, default_cache_dir
from seapack.errors import PolicyError, ValidationError
from seapack.policy import Policy, ensure_network_allowed


def test_settings_defaults_from_empty_environment(tmp_path: Path) -> None:
    settings = Settings.from_env({"XDG_CACHE_HOME": str(tmp_path)})

    assert settings.cache_dir == tmp_path / "seapack"
    assert settings.dist_url == DEFAULT_DIST_URL
    assert settings.policy.offline is False
    assert settings.max_workers == 4


def test_settings_read_overrides(tmp_path: Path) -> None:
    settings = Settings.from_env(
        {
            "SEAPACK_CACHE_DIR": str(tmp_path / "c"),
            "SEAPACK_DIST_URL": "https://mirror.example/node/",
            "SEAPACK_OFFLINE": "yes",
            "SEAPACK_LOCK_TIMEOUT": "2.5",
            "SEAPACK_MAX_WORKERS": "1",
        }
    )

    assert settings.cache_dir == tmp_path / "c"
    assert settings.dist_url == "https://mirror.example/node"
    assert settings.policy.offline is True
    assert settings.lock_timeout == 2.5
    assert settings.max_workers == 1


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SEAPACK_OFFLINE", "maybe"),
        ("SEAPACK_LOCK_TIMEOUT", "soon"),
        ("SEAPACK_LOCK_TIMEOUT", "-1"),
        ("SEAPACK_MAX_WORKERS", "0"),
    ],
)
def test_invalid_environment_values_are_rejected(name: str, value: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        Settings.from_env({name: value})

    assert excinfo.value.context["variable"] == name


def test_default_cache_dir_falls_back_to_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("seapack.config.Path.home", lambda: tmp_path)

    assert default_cache_dir({}) == tmp_path / ".cache" / "seapack"


def test_offline_policy_blocks_network() -> None:
    ensure_network_allowed(policy=Policy(), operation="fetch")

    with pytest.raises(PolicyError) as excinfo:
        ensure_network_allowed(policy=Policy(network_mode="offline"), operation="fetch", url="x")

    assert excinfo.value.context == {"operation": "fetch", "url": "x"}
