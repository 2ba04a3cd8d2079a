"""Project `package.json` and `sea-config.json` loading."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from seapack.errors import ValidationError
from seapack.models import BlobDescriptor

PACKAGE_FILE = "package.json"
SEA_CONFIG_FILE = "sea-config.json"


@dataclass(frozen=True, slots=True)
class PackageConfig:
    name: str
    main: str | None = None
    type: str = "commonjs"
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BlobConfig:
    """The runtime's blob configuration; unknown keys are kept in ``options``."""

    main: str
    output: str
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.options, "main": self.main, "output": self.output}


def read_package_config(project_dir: str | Path) -> PackageConfig:
    path = Path(project_dir) / PACKAGE_FILE
    payload = _read_json_object(path)
    name = _required_str(payload, "name", path=path)
    main = payload.get("main")
    module_type = payload.get("type", "commonjs")
    return PackageConfig(
        name=name,
        main=main if isinstance(main, str) and main else None,
        type=module_type if isinstance(module_type, str) else "commonjs",
        extra={k: v for k, v in payload.items() if k not in ("name", "main", "type")},
    )


def read_blob_config(path: str | Path) -> BlobConfig:
    config_path = Path(path)
    payload = _read_json_object(config_path)
    return BlobConfig(
        main=_required_str(payload, "main", path=config_path),
        output=_required_str(payload, "output", path=config_path),
        options={k: v for k, v in payload.items() if k not in ("main", "output")},
    )


def load_descriptor(
    project_dir: str | Path,
    config_name: str = SEA_CONFIG_FILE,
) -> BlobDescriptor:
    root = Path(project_dir).resolve()
    config_path = root / config_name
    blob_config = read_blob_config(config_path)
    package = read_package_config(root)
    entry = (root / blob_config.main).resolve()
    if not entry.is_file():
        raise ValidationError(
            "Entry script named by the blob configuration does not exist.",
            hint=f"Fix `main` in {config_name}.",
            context={"operation": "load_descriptor", "path": str(config_path), "entry": str(entry)},
        )
    return BlobDescriptor(
        project_dir=root,
        config_path=config_path,
        entry=entry,
        output_name=blob_config.output,
        options=dict(blob_config.options),
        package_type=package.type,
    )


def _read_json_object(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ValidationError(
            f"Missing `{path.name}`.",
            hint=f"Create {path.name} in the project directory.",
            context={"operation": "load_config", "path": str(path)},
        )
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(
            f"`{path.name}` is not valid JSON.",
            hint=str(exc),
            context={"operation": "load_config", "path": str(path)},
        ) from exc
    if not isinstance(parsed, dict):
        raise ValidationError(
            f"`{path.name}` must contain a JSON object.",
            context={"operation": "load_config", "path": str(path)},
        )
    return parsed


def _required_str(payload: Mapping[str, Any], key: str, *, path: Path) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(
            f"`{path.name}` requires a non-empty `{key}` string.",
            context={"operation": "load_config", "path": str(path), "field": key},
        )
    return value
