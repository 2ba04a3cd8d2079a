"""Code-identity restoration for patched executables."""

from __future__ import annotations

import shutil
import subprocess
import warnings
from dataclasses import dataclass
from pathlib import Path

from seapack.errors import SigningError, SigningUnavailableWarning
from seapack.models import PatchedExecutable, RuntimeTriple, SigningResult, TargetSpec
from seapack.observability import StructuredLogger
from seapack.platforms import Os, host_arch, host_os


@dataclass(frozen=True, slots=True)
class SigningTool:
    os: Os
    program: str
    args: tuple[str, ...]
    remediation: str

    def command(self, program_path: str, executable: Path) -> list[str]:
        return [program_path, *self.args, str(executable)]


SIGNING_TOOLS: dict[Os, SigningTool] = {
    "darwin": SigningTool(
        os="darwin",
        program="codesign",
        args=("--sign", "-", "--force"),
        remediation=(
            "Sign the binary on a macOS host (`codesign --sign - --force <binary>`) "
            "before distributing it; unsigned binaries are killed at launch on Apple Silicon."
        ),
    ),
    "win": SigningTool(
        os="win",
        program="signtool",
        args=("sign", "/fd", "SHA256"),
        remediation=(
            "Sign the binary on a Windows host with `signtool sign /fd SHA256 <binary>` "
            "before distributing it; unsigned binaries trigger SmartScreen warnings."
        ),
    ),
}


class SigningCoordinator:
    """Runs the platform signing tool after injection, when the host can."""

    def __init__(
        self,
        *,
        host: TargetSpec | None = None,
        tools: dict[Os, SigningTool] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.host = host or TargetSpec(os=host_os(), arch=host_arch())
        self.tools = SIGNING_TOOLS if tools is None else tools
        self.logger = logger

    def finalize(
        self,
        executable: PatchedExecutable | str | Path,
        target: RuntimeTriple | TargetSpec | None = None,
    ) -> SigningResult:
        path, spec = self._resolve(executable, target)
        target_os = spec.os
        tool = self.tools.get(target_os)
        if tool is None:
            return SigningResult(status="not_required")

        if self.host.os != target_os:
            return self._unavailable(
                tool, path, spec, reason=f"host is {self.host.os}, target is {target_os}"
            )
        program_path = shutil.which(tool.program)
        if program_path is None:
            return self._unavailable(
                tool, path, spec, reason=f"`{tool.program}` was not found on PATH"
            )

        cmd = tool.command(program_path, path)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise SigningError(
                "Signing tool could not be started.",
                context={"operation": "sign", "command": " ".join(cmd), "reason": str(exc)},
            ) from exc
        if result.returncode != 0:
            raise SigningError(
                "Signing tool failed.",
                hint="Check the signing tool output; no executable was written.",
                context={
                    "operation": "sign",
                    "path": str(path),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                    "command": " ".join(cmd),
                },
            )
        self._log(spec, "Signed executable.", extra={"path": str(path), "tool": tool.program})
        return SigningResult(status="signed", tool=tool.program)

    def _unavailable(
        self, tool: SigningTool, path: Path, spec: TargetSpec, *, reason: str
    ) -> SigningResult:
        message = f"Cannot sign {path.name} for {tool.os}: {reason}."
        warnings.warn(f"{message} {tool.remediation}", SigningUnavailableWarning, stacklevel=3)
        self._log(
            spec,
            message,
            level="warning",
            extra={"path": str(path), "remediation": tool.remediation},
        )
        return SigningResult(status="unavailable", tool=tool.program, remediation=tool.remediation)

    def _resolve(
        self,
        executable: PatchedExecutable | str | Path,
        target: RuntimeTriple | TargetSpec | None,
    ) -> tuple[Path, TargetSpec]:
        if isinstance(executable, PatchedExecutable):
            if executable.path is None:
                raise SigningError(
                    "Patched executable has not been written to disk.",
                    hint="Write the executable with `inject_file` before signing.",
                    context={"operation": "sign", "target": executable.triple.key},
                )
            spec = target or executable.triple
            return executable.path, TargetSpec(os=spec.os, arch=spec.arch)
        if target is None:
            raise SigningError(
                "A target is required to sign an executable given by path.",
                context={"operation": "sign", "path": str(executable)},
            )
        return Path(executable), TargetSpec(os=target.os, arch=target.arch)

    def _log(
        self,
        spec: TargetSpec,
        message: str,
        *,
        level: str = "info",
        extra: dict[str, str] | None = None,
    ) -> None:
        if self.logger is not None:
            self.logger.log(
                operation="sign",
                target=spec.label,
                stage="sign",
                message=message,
                level=level,
                extra=extra,
            )

