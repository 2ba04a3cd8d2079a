"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import VERSION, FakeDist, FakeSeaRuntime, build_dist, write_project

from seapack.cache import ArtifactCache
from seapack.config import Settings
from seapack.fetch import RuntimeManifest
from seapack.models import TargetSpec
from seapack.observability import StructuredLogger

HOST = TargetSpec(os="linux", arch="x64")


@pytest.fixture
def dist(tmp_path: Path) -> FakeDist:
    """A local distribution tree serving one runtime version for three targets."""
    return build_dist(tmp_path / "dist")


@pytest.fixture
def settings(tmp_path: Path, dist: FakeDist) -> Settings:
    return Settings(cache_dir=tmp_path / "cache", dist_url=dist.url, lock_timeout=5.0)


@pytest.fixture
def manifest(settings: Settings) -> RuntimeManifest:
    return RuntimeManifest(settings.dist_url, policy=settings.policy)


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger()


@pytest.fixture
def cache(settings: Settings, manifest: RuntimeManifest, logger: StructuredLogger) -> ArtifactCache:
    return ArtifactCache.from_settings(settings, manifest=manifest, logger=logger)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = write_project(tmp_path / "project")
    (root / ".node-version").write_text(f"{VERSION}\n", encoding="utf-8")
    return root


@pytest.fixture
def fake_sea(monkeypatch: pytest.MonkeyPatch) -> FakeSeaRuntime:
    runtime = FakeSeaRuntime()
    monkeypatch.setattr("seapack.compiler.blob.subprocess.run", runtime)
    return runtime
