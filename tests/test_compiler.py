import json
import subprocess
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeSeaRuntime, triple, write_project

from seapack.compiler import (
    BlobCompiler,
    EsbuildBundler,
    NpmInstaller,
    bundle_descriptor,
    load_descriptor,
    needs_normalization,
    prepare_project,
    read_blob_config,
    read_package_config,
)
from seapack.errors import (
    BlobGenerationError,
    BundlerError,
    CrossCompileBlobUnsupported,
    DependencyInstallError,
    UnsupportedModuleSyntax,
    ValidationError,
)
from seapack.models import CacheEntry, TargetSpec

HOST = TargetSpec(os="linux", arch="x64")


def test_load_descriptor_resolves_entry_and_keeps_options(tmp_path: Path) -> None:
    project = write_project(tmp_path / "app")

    descriptor = load_descriptor(project)

    assert descriptor.entry == (project / "index.js").resolve()
    assert descriptor.output_name == "sea-prep.blob"
    assert descriptor.options == {"disableExperimentalSEAWarning": True}
    assert descriptor.package_type == "commonjs"
    assert descriptor.normalized is False


def test_load_descriptor_requires_existing_entry(tmp_path: Path) -> None:
    project = write_project(tmp_path / "app")
    (project / "index.js").unlink()

    with pytest.raises(ValidationError) as excinfo:
        load_descriptor(project)

    assert "main" in (excinfo.value.hint or "")


def test_blob_config_requires_main_and_output(tmp_path: Path) -> None:
    config = tmp_path / "sea-config.json"
    config.write_text(json.dumps({"main": "index.js"}), encoding="utf-8")

    with pytest.raises(ValidationError) as excinfo:
        read_blob_config(config)

    assert excinfo.value.context["field"] == "output"


def test_package_config_reads_name_and_type(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"name": "tool", "type": "module", "bin": "cli.js"}), encoding="utf-8"
    )

    package = read_package_config(tmp_path)

    assert (package.name, package.type, package.main) == ("tool", "module", None)
    assert package.extra == {"bin": "cli.js"}


def test_invalid_package_json_is_a_validation_error(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("[1, 2", encoding="utf-8")

    with pytest.raises(ValidationError):
        read_package_config(tmp_path)


@pytest.mark.parametrize(
    ("name", "source", "package_type", "expected"),
    [
        ("index.js", "const fs = require('fs');\n", "commonjs", False),
        ("index.js", "import fs from 'fs';\n", "commonjs", True),
        ("index.js", "export default function main() {}\n", "commonjs", True),
        ("index.js", "const m = await import('./x.js');\n", "commonjs", False),
        ("index.js", "module.exports = {};\n", "module", True),
        ("index.cjs", "module.exports = {};\n", "module", False),
        ("index.mjs", "console.log(1);\n", "commonjs", True),
        ("index.ts", "const x: number = 1;\n", "commonjs", True),
    ],
)
def test_module_syntax_detection(
    tmp_path: Path, name: str, source: str, package_type: str, expected: bool
) -> None:
    entry = tmp_path / name
    entry.write_text(source, encoding="utf-8")

    assert needs_normalization(entry, package_type=package_type) is expected


def test_compile_runs_runtime_with_staged_config(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app", source="console.log('hi');\n")
    entry = _entry(tmp_path, "linux", "x64")

    blob = BlobCompiler(host=HOST).compile(load_descriptor(project), target=entry)

    assert blob.data == b"SEA-BLOB:console.log('hi');\n"
    assert blob.target == entry.triple
    call = fake_sea.calls[0]
    assert call["cmd"][:2] == [str(entry.executable), "--experimental-sea-config"]
    assert call["cwd"] == str(project.resolve())
    assert call["config"]["disableExperimentalSEAWarning"] is True
    assert Path(call["config"]["main"]).is_absolute()
    assert not (project / "sea-prep.blob").exists()


def test_cross_target_blob_uses_host_compiler(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app")
    target = _entry(tmp_path, "win", "x64")
    compiler = _entry(tmp_path, "linux", "x64")

    blob = BlobCompiler(host=HOST).compile(load_descriptor(project), target=target, compiler=compiler)

    assert blob.compiled_with == compiler.triple
    assert blob.target == target.triple
    assert fake_sea.calls[0]["cmd"][0] == str(compiler.executable)


def test_compiler_must_run_on_host(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app")
    target = _entry(tmp_path, "darwin", "arm64")

    with pytest.raises(CrossCompileBlobUnsupported):
        BlobCompiler(host=HOST).compile(load_descriptor(project), target=target)

    assert fake_sea.calls == []


def test_compiler_version_must_match_target(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app")
    target = _entry(tmp_path, "win", "x64")
    compiler = _entry(tmp_path, "linux", "x64", version="20.0.0")

    with pytest.raises(CrossCompileBlobUnsupported):
        BlobCompiler(host=HOST).compile(load_descriptor(project), target=target, compiler=compiler)


def test_snapshot_blob_cannot_target_other_platform(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app")
    config = json.loads((project / "sea-config.json").read_text(encoding="utf-8"))
    config["useSnapshot"] = True
    (project / "sea-config.json").write_text(json.dumps(config), encoding="utf-8")

    with pytest.raises(CrossCompileBlobUnsupported) as excinfo:
        BlobCompiler(host=HOST).compile(
            load_descriptor(project),
            target=_entry(tmp_path, "win", "x64"),
            compiler=_entry(tmp_path, "linux", "x64"),
        )

    assert "useSnapshot" in (excinfo.value.hint or "")


def test_esm_entry_without_bundling_is_rejected(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app", source="import path from 'node:path';\n")

    with pytest.raises(UnsupportedModuleSyntax):
        BlobCompiler(host=HOST).compile(load_descriptor(project), target=_entry(tmp_path, "linux", "x64"))

    assert fake_sea.calls == []


def test_runtime_failure_is_blob_generation_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("seapack.compiler.blob.subprocess.run", FakeSeaRuntime(returncode=1))
    project = write_project(tmp_path / "app")

    with pytest.raises(BlobGenerationError) as excinfo:
        BlobCompiler(host=HOST).compile(load_descriptor(project), target=_entry(tmp_path, "linux", "x64"))

    assert excinfo.value.context["returncode"] == "1"
    assert "SyntaxError" in excinfo.value.context["stderr"]


def test_runtime_without_output_is_blob_generation_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "seapack.compiler.blob.subprocess.run", FakeSeaRuntime(write_output=False)
    )
    project = write_project(tmp_path / "app")

    with pytest.raises(BlobGenerationError):
        BlobCompiler(host=HOST).compile(load_descriptor(project), target=_entry(tmp_path, "linux", "x64"))


def test_bundled_descriptor_passes_syntax_check(tmp_path: Path, fake_sea: FakeSeaRuntime) -> None:
    project = write_project(tmp_path / "app", source="export const answer = 42;\n")
    descriptor = load_descriptor(project)

    bundled = bundle_descriptor(descriptor, _CopyBundler(), work_dir=tmp_path / "work")
    blob = BlobCompiler(host=HOST).compile(bundled, target=_entry(tmp_path, "linux", "x64"))

    assert bundled.normalized is True
    assert bundled.entry == tmp_path / "work" / "bundled.cjs"
    assert blob.data.startswith(b"SEA-BLOB:/* bundled */")
    assert descriptor.entry.read_text(encoding="utf-8") == "export const answer = 42;\n"


def test_esbuild_bundler_invocation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        seen.append(cmd)
        Path(cmd[-1].removeprefix("--outfile=")).write_text("bundled", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr("seapack.compiler.bundler.subprocess.run", fake_run)
    entry = tmp_path / "index.mjs"
    entry.write_text("export {};\n", encoding="utf-8")

    output = EsbuildBundler().bundle(entry, tmp_path / "out" / "bundled.cjs", cwd=tmp_path)

    assert output.read_text(encoding="utf-8") == "bundled"
    assert seen[0][:3] == ["npx", "--yes", "esbuild"]
    assert "--format=cjs" in seen[0]
    assert "--platform=node" in seen[0]


def test_esbuild_failure_is_bundler_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Could not resolve 'x'")

    monkeypatch.setattr("seapack.compiler.bundler.subprocess.run", fake_run)
    entry = tmp_path / "index.mjs"
    entry.write_text("import 'x';\n", encoding="utf-8")

    with pytest.raises(BundlerError) as excinfo:
        EsbuildBundler().bundle(entry, tmp_path / "bundled.cjs", cwd=tmp_path)

    assert "Could not resolve" in excinfo.value.context["stderr"]


def test_prepare_copies_project_and_installs_for_target(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    npm = FakeSeaRuntime()
    monkeypatch.setattr("seapack.compiler.prepare.subprocess.run", npm)
    project = write_project(tmp_path / "app", dependencies={"native-dep": "^1.0.0"})
    (project / "node_modules" / "native-dep").mkdir(parents=True)
    (project / "node_modules" / "native-dep" / "index.js").write_text("host build\n", encoding="utf-8")
    (project / ".git").mkdir()
    (project / "hello").write_bytes(b"previous output")

    copy = prepare_project(
        project, tmp_path / "work", TargetSpec(os="win", arch="x86"), NpmInstaller(), exclude=["hello"]
    )

    assert copy == tmp_path / "work" / "project"
    assert npm.npm_calls == [
        {
            "cmd": ["npm", "install", "--target_platform=win32", "--target_arch=ia32"],
            "cwd": str(copy),
        }
    ]
    installed = (copy / "node_modules" / "native-dep" / "index.js").read_text(encoding="utf-8")
    assert "--target_platform=win32" in installed
    assert (project / "node_modules" / "native-dep" / "index.js").read_text(encoding="utf-8") == "host build\n"
    assert not (copy / ".git").exists()
    assert not (copy / "hello").exists()
    assert (copy / "sea-config.json").is_file()


def test_prepare_without_dependencies_skips_install(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    npm = FakeSeaRuntime()
    monkeypatch.setattr("seapack.compiler.prepare.subprocess.run", npm)
    project = write_project(tmp_path / "app")
    (project / "node_modules" / "vendored").mkdir(parents=True)

    copy = prepare_project(project, tmp_path / "work", HOST, NpmInstaller())

    assert npm.npm_calls == []
    assert (copy / "node_modules" / "vendored").is_dir()


def test_npm_failure_is_dependency_install_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("seapack.compiler.prepare.subprocess.run", FakeSeaRuntime(npm_returncode=1))
    project = write_project(tmp_path / "app", dependencies={"missing": "1.0.0"})

    with pytest.raises(DependencyInstallError) as excinfo:
        prepare_project(project, tmp_path / "work", TargetSpec(os="darwin", arch="arm64"), NpmInstaller())

    assert excinfo.value.code == "E_DEPENDENCIES"
    assert excinfo.value.context["target"] == "darwin-arm64"
    assert "404" in excinfo.value.context["stderr"]


def test_missing_npm_is_dependency_install_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr("seapack.compiler.prepare.subprocess.run", fake_run)

    with pytest.raises(DependencyInstallError) as excinfo:
        NpmInstaller().install(tmp_path, HOST)

    assert "npm" in (excinfo.value.hint or "")


class _CopyBundler:
    def bundle(self, entry: Path, output: Path, *, cwd: Path) -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text("/* bundled */\nmodule.exports = {};\n", encoding="utf-8")
        return output


def _entry(tmp_path: Path, os_name: str, arch: str, *, version: str = "22.3.0") -> CacheEntry:
    item = triple(os_name, arch, version)
    root = tmp_path / "runtimes" / item.key
    executable = root / "tree" / item.executable_relpath
    executable.parent.mkdir(parents=True, exist_ok=True)
    executable.write_bytes(b"runtime")
    return CacheEntry(
        triple=item,
        root=root,
        tree=root / "tree",
        executable=executable,
        archive_name=item.archive_name,
        archive_sha256="0" * 64,
        executable_sha256="0" * 64,
        executable_size=7,
    )
