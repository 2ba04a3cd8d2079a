"""Startup blob compilation APIs."""

from .blob import BlobCompiler
from .bundler import Bundler, EsbuildBundler, bundle_descriptor
from .config import BlobConfig, PackageConfig, load_descriptor, read_blob_config, read_package_config
from .prepare import DependencyInstaller, NpmInstaller, declares_dependencies, prepare_project
from .syntax import needs_normalization, normalization_reason

__all__ = [
    "BlobCompiler",
    "BlobConfig",
    "Bundler",
    "DependencyInstaller",
    "EsbuildBundler",
    "NpmInstaller",
    "PackageConfig",
    "bundle_descriptor",
    "declares_dependencies",
    "load_descriptor",
    "needs_normalization",
    "normalization_reason",
    "prepare_project",
    "read_blob_config",
    "read_package_config",
]
