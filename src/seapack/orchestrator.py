"""Per-target packaging pipeline and multi-target fan-out."""

from __future__ import annotations

import os
import tempfile
import threading
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from pathlib import Path

from seapack.cache import ArtifactCache
from seapack.compiler import (
    BlobCompiler,
    Bundler,
    DependencyInstaller,
    EsbuildBundler,
    NpmInstaller,
    bundle_descriptor,
    load_descriptor,
    prepare_project,
    read_package_config,
)
from seapack.config import Settings
from seapack.errors import BuildCancelled, SeapackError
from seapack.fetch.manifest import RuntimeManifest
from seapack.inject import BinaryInjector
from seapack.models import BuildReport, RuntimeTriple, Stage, TargetOutcome, TargetSpec
from seapack.observability import StructuredLogger
from seapack.platforms import executable_suffix
from seapack.resolver import TargetLike, VersionResolver, host_target, parse_targets
from seapack.signing import SigningCoordinator


def output_name(package_name: str, target: TargetSpec, *, multi: bool) -> str:
    stem = f"{package_name}-{target.os}-{target.arch}" if multi else package_name
    return stem + executable_suffix(target.os)


def partial_path(output: Path) -> Path:
    """Sibling of ``output`` that holds the executable until it is signed."""
    return output.with_name(f".{output.name}.{uuid.uuid4().hex}.partial")


class PackagingOrchestrator:
    """Builds one executable per requested target.

    Every target runs resolve, acquire, prepare, bundle, compile, inject and
    sign on its own. A failing target is recorded in the report and never
    stops the others. The output path only ever receives a finished
    executable: injection and signing work on a hidden sibling that is renamed
    into place at the end.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        manifest: RuntimeManifest | None = None,
        cache: ArtifactCache | None = None,
        resolver: VersionResolver | None = None,
        compiler: BlobCompiler | None = None,
        injector: BinaryInjector | None = None,
        signer: SigningCoordinator | None = None,
        bundler: Bundler | None = None,
        installer: DependencyInstaller | None = None,
        logger: StructuredLogger | None = None,
        host: TargetSpec | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.logger = logger or StructuredLogger()
        self.host = host or host_target()
        policy = self.settings.policy
        self.manifest = manifest or RuntimeManifest(self.settings.dist_url, policy=policy)
        self.cache = cache or ArtifactCache.from_settings(
            self.settings, manifest=self.manifest, logger=self.logger
        )
        self.resolver = resolver or VersionResolver(self.manifest, cache=self.cache, policy=policy)
        self.compiler = compiler or BlobCompiler(host=self.host, logger=self.logger)
        self.injector = injector or BinaryInjector(logger=self.logger)
        self.signer = signer or SigningCoordinator(host=self.host, logger=self.logger)
        self.bundler = bundler or EsbuildBundler()
        self.installer = installer or NpmInstaller()

    def build(
        self,
        project_dir: str | Path,
        targets: Iterable[TargetLike] | None = None,
        *,
        version: str | None = None,
        output_dir: str | Path | None = None,
        bundle: bool = False,
        cancel: threading.Event | None = None,
    ) -> BuildReport:
        project = Path(project_dir).resolve()
        specs = parse_targets(targets)
        destination = Path(output_dir).resolve() if output_dir is not None else project
        multi = len(specs) > 1
        self.logger.log(
            operation="build",
            target=None,
            stage=None,
            message="Starting build.",
            extra={"project": str(project), "targets": [spec.label for spec in specs]},
        )

        def run(spec: TargetSpec) -> TargetOutcome:
            return self._build_target(
                spec,
                project=project,
                destination=destination,
                multi=multi,
                version=version,
                bundle=bundle,
                targets=tuple(specs),
                cancel=cancel,
            )

        report = BuildReport()
        workers = min(self.settings.max_workers, len(specs))
        if workers <= 1:
            for spec in specs:
                report.outcomes[spec] = run(spec)
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="seapack-build") as pool:
                futures = {spec: pool.submit(run, spec) for spec in specs}
                for spec, future in futures.items():
                    report.outcomes[spec] = future.result()

        self.logger.log(
            operation="build",
            target=None,
            stage=None,
            message="Build finished." if report.ok else "Build finished with failures.",
            level="info" if report.ok else "error",
            extra={"failed": [outcome.target.label for outcome in report.failures()]},
        )
        return report

    def clean_cache(self) -> list[str]:
        return self.cache.evict_all()

    def _build_target(
        self,
        spec: TargetSpec,
        *,
        project: Path,
        destination: Path,
        multi: bool,
        version: str | None,
        bundle: bool,
        targets: tuple[TargetSpec, ...],
        cancel: threading.Event | None,
    ) -> TargetOutcome:
        stage: Stage = "resolve"
        triple: RuntimeTriple | None = None
        partial: Path | None = None
        try:
            _checkpoint(cancel, spec, stage)
            triple = self.resolver.resolve_one(spec, version=version, project_dir=project)
            self._log(spec, stage, "Resolved runtime.", extra=triple.to_dict())

            stage = "acquire"
            _checkpoint(cancel, spec, stage)
            target_entry = self.cache.acquire(triple)
            compiler_triple = RuntimeTriple(
                version=triple.version, os=self.host.os, arch=self.host.arch
            )
            if compiler_triple == triple:
                compiler_entry = target_entry
            else:
                compiler_entry = self.cache.acquire(compiler_triple)

            with ExitStack() as stack:
                stack.enter_context(self.cache.lease(target_entry))
                if compiler_entry is not target_entry:
                    stack.enter_context(self.cache.lease(compiler_entry))
                scratch = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="seapack-")))

                stage = "prepare"
                _checkpoint(cancel, spec, stage)
                package = read_package_config(project)
                exclude = _build_products(project, destination, package.name, targets, multi=multi)
                workspace = prepare_project(project, scratch, spec, self.installer, exclude=exclude)
                self._log(spec, stage, "Prepared project copy.", extra={"path": str(workspace)})

                stage = "bundle"
                _checkpoint(cancel, spec, stage)
                descriptor = load_descriptor(workspace)
                if bundle:
                    descriptor = bundle_descriptor(descriptor, self.bundler, work_dir=scratch)
                    self._log(spec, stage, "Bundled entry script.", extra={"entry": str(descriptor.entry)})

                stage = "compile"
                _checkpoint(cancel, spec, stage)
                blob = self.compiler.compile(descriptor, target=target_entry, compiler=compiler_entry)
                self._log(spec, stage, "Compiled startup blob.", extra={"sha256": blob.sha256})

                stage = "inject"
                _checkpoint(cancel, spec, stage)
                output = destination / output_name(package.name, spec, multi=multi)
                partial = partial_path(output)
                patched = self.injector.inject_file(target_entry, blob, partial)

            stage = "sign"
            _checkpoint(cancel, spec, stage)
            signing = self.signer.finalize(patched, triple)
            os.replace(partial, output)
        except SeapackError as exc:
            self._log(spec, stage, exc.message, level="error", extra=exc.to_dict())
            return TargetOutcome(
                target=spec,
                status="failed",
                stage=stage,
                triple=triple,
                error=exc.to_dict(),
            )
        finally:
            if partial is not None:
                partial.unlink(missing_ok=True)

        self._log(spec, "complete", "Target built.", extra={"output": str(output)})
        return TargetOutcome(
            target=spec,
            status="signing_unavailable" if signing.status == "unavailable" else "success",
            stage="complete",
            triple=triple,
            output_path=output,
            signing=signing,
        )

    def _log(
        self,
        spec: TargetSpec,
        stage: Stage,
        message: str,
        *,
        level: str = "info",
        extra: dict[str, object] | None = None,
    ) -> None:
        self.logger.log(
            operation="build_target",
            target=spec.label,
            stage=stage,
            message=message,
            level=level,
            extra=extra,
        )


def _build_products(
    project: Path,
    destination: Path,
    package_name: str,
    targets: tuple[TargetSpec, ...],
    *,
    multi: bool,
) -> tuple[str, ...]:
    """Names the project copy leaves out: this build's outputs or their directory."""
    if destination == project:
        return tuple(output_name(package_name, spec, multi=multi) for spec in targets)
    try:
        relative = destination.relative_to(project)
    except ValueError:
        return ()
    return (relative.parts[0],)


def _checkpoint(cancel: threading.Event | None, spec: TargetSpec, stage: Stage) -> None:
    if cancel is not None and cancel.is_set():
        raise BuildCancelled(
            "Build was cancelled.",
            context={"operation": "build", "target": spec.label, "stage": stage},
        )
