"""Package JavaScript projects into standalone Node.js executables."""

from .cache import ArtifactCache
from .compiler import BlobCompiler, EsbuildBundler, load_descriptor
from .config import Settings
from .errors import (
    AlreadyInjected,
    BlobGenerationError,
    BuildCancelled,
    BundlerError,
    CacheBusyError,
    CacheError,
    CacheLockTimeout,
    CrossCompileBlobUnsupported,
    DependencyInstallError,
    ExtractionError,
    FetchError,
    InjectionError,
    IntegrityError,
    LockfileError,
    MarkerNotFound,
    PolicyError,
    ResolutionError,
    SeapackError,
    SigningError,
    SigningUnavailableWarning,
    UnsupportedModuleSyntax,
    ValidationError,
)
from .fetch import RuntimeManifest
from .inject import BinaryInjector
from .lockfile import read_project_lock, write_project_lock
from .models import (
    BlobDescriptor,
    BuildReport,
    CacheEntry,
    PatchedExecutable,
    RuntimeTriple,
    SigningResult,
    StartupBlob,
    TargetOutcome,
    TargetSpec,
)
from .observability import StructuredLogger
from .orchestrator import PackagingOrchestrator
from .policy import Policy
from .resolver import VersionResolver
from .signing import SigningCoordinator
from .versions import Version, max_satisfying, parse_version

__all__ = [
    "AlreadyInjected",
    "ArtifactCache",
    "BinaryInjector",
    "BlobCompiler",
    "BlobDescriptor",
    "BlobGenerationError",
    "BuildCancelled",
    "BuildReport",
    "BundlerError",
    "CacheBusyError",
    "CacheEntry",
    "CacheError",
    "CacheLockTimeout",
    "CrossCompileBlobUnsupported",
    "DependencyInstallError",
    "EsbuildBundler",
    "ExtractionError",
    "FetchError",
    "InjectionError",
    "IntegrityError",
    "LockfileError",
    "MarkerNotFound",
    "PackagingOrchestrator",
    "PatchedExecutable",
    "Policy",
    "PolicyError",
    "ResolutionError",
    "RuntimeManifest",
    "RuntimeTriple",
    "SeapackError",
    "Settings",
    "SigningCoordinator",
    "SigningError",
    "SigningResult",
    "SigningUnavailableWarning",
    "StartupBlob",
    "StructuredLogger",
    "TargetOutcome",
    "TargetSpec",
    "UnsupportedModuleSyntax",
    "ValidationError",
    "Version",
    "VersionResolver",
    "load_descriptor",
    "max_satisfying",
    "parse_version",
    "read_project_lock",
    "write_project_lock",
]
