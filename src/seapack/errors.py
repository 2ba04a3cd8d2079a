"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

EVICT_HINT = "The cached runtime may be corrupt; run `evict` for this target and rebuild."


class ErrorCode(StrEnum):
    """Stable error identifiers used across the packaging pipeline."""

    VALIDATION = "E_VALIDATION"
    RESOLUTION = "E_RESOLUTION"
    LOCKFILE = "E_LOCKFILE"
    FETCH = "E_FETCH"
    INTEGRITY = "E_INTEGRITY"
    EXTRACTION = "E_EXTRACTION"
    CACHE = "E_CACHE"
    CACHE_LOCK = "E_CACHE_LOCK"
    CACHE_BUSY = "E_CACHE_BUSY"
    BUNDLER = "E_BUNDLER"
    DEPENDENCIES = "E_DEPENDENCIES"
    MODULE_SYNTAX = "E_MODULE_SYNTAX"
    CROSS_COMPILE = "E_CROSS_COMPILE"
    BLOB = "E_BLOB"
    INJECTION = "E_INJECTION"
    MARKER_NOT_FOUND = "E_MARKER_NOT_FOUND"
    ALREADY_INJECTED = "E_ALREADY_INJECTED"
    SIGNING = "E_SIGNING"
    POLICY = "E_POLICY"
    CANCELLED = "E_CANCELLED"


class SeapackError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class ResolutionError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RESOLUTION, hint=hint, context=context)


class LockfileError(ResolutionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        SeapackError.__init__(self, message, code=ErrorCode.LOCKFILE, hint=hint, context=context)


class FetchError(SeapackError):
    """Network or remote failure. Safe for the caller to retry."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class IntegrityError(SeapackError):
    """Checksum mismatch. Never retried automatically."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = EVICT_HINT,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INTEGRITY, hint=hint, context=context)


class ExtractionError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.EXTRACTION, hint=hint, context=context)


class CacheError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE, hint=hint, context=context)


class CacheLockTimeout(CacheError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        SeapackError.__init__(
            self, message, code=ErrorCode.CACHE_LOCK, hint=hint, context=context
        )


class CacheBusyError(CacheError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        SeapackError.__init__(
            self, message, code=ErrorCode.CACHE_BUSY, hint=hint, context=context
        )


class BundlerError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.BUNDLER, hint=hint, context=context)


class DependencyInstallError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DEPENDENCIES, hint=hint, context=context)


class UnsupportedModuleSyntax(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MODULE_SYNTAX, hint=hint, context=context)


class CrossCompileBlobUnsupported(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CROSS_COMPILE, hint=hint, context=context)


class BlobGenerationError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.BLOB, hint=hint, context=context)


class InjectionError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INJECTION, hint=hint, context=context)


class MarkerNotFound(InjectionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = EVICT_HINT,
        context: Mapping[str, str] | None = None,
    ) -> None:
        SeapackError.__init__(
            self, message, code=ErrorCode.MARKER_NOT_FOUND, hint=hint, context=context
        )


class AlreadyInjected(InjectionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        SeapackError.__init__(
            self, message, code=ErrorCode.ALREADY_INJECTED, hint=hint, context=context
        )


class SigningError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SIGNING, hint=hint, context=context)


class PolicyError(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class BuildCancelled(SeapackError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


class SigningUnavailableWarning(UserWarning):
    """Warning raised when a target needs signing the host cannot provide."""


__all__ = [
    "AlreadyInjected",
    "BlobGenerationError",
    "BuildCancelled",
    "BundlerError",
    "CacheBusyError",
    "CacheError",
    "CacheLockTimeout",
    "CrossCompileBlobUnsupported",
    "ErrorCode",
    "ExtractionError",
    "FetchError",
    "InjectionError",
    "IntegrityError",
    "LockfileError",
    "MarkerNotFound",
    "PolicyError",
    "ResolutionError",
    "SeapackError",
    "SigningError",
    "SigningUnavailableWarning",
    "UnsupportedModuleSyntax",
    "ValidationError",
]
