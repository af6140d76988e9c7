"""Loading manifests and infrastructure models from YAML files.

Infrastructure file::

    targets:
      test1:
        hostname: test1.example.org
        system: x86_64-linux

Manifest file::

    activation:
      - service: /nix/store/abc-db
        name: db
        type: mysql-database
        container: mysql-database
        target: test1
        arguments: ["mysqlUsername=root"]
        depends_on: []
    profiles:
      - target: test1
        derivation: /nix/store/xyz-profile
    targets: {}   # optional, for targets no longer in the infrastructure
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from rollover.core.exceptions import ManifestError
from rollover.core.models import Manifest, Target

logger = structlog.get_logger()

PathLike = Union[str, Path]


def _read_yaml(path: PathLike) -> Dict[str, Any]:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ManifestError(f"File not found: {path}", code="not_found") from None
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Cannot read {path}: {exc}", code="unreadable") from exc
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML in {path}: {exc}", code="invalid_yaml") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManifestError(f"Expected a mapping at the top of {path}", code="invalid_yaml")
    return data


def _parse_targets(raw: Any, source: PathLike) -> Dict[str, Target]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ManifestError(f"'targets' must be a mapping in {source}", code="invalid_targets")

    targets = {}
    for name, properties in raw.items():
        properties = properties or {}
        if not isinstance(properties, dict):
            raise ManifestError(f"Properties of target {name} must be a mapping", code="invalid_targets")
        targets[str(name)] = Target(
            name=str(name),
            properties={str(k): str(v) for k, v in properties.items()},
        )
    return targets


def load_infrastructure(path: Optional[PathLike]) -> Dict[str, Target]:
    """Load the targets of an infrastructure model."""
    if path is None:
        return {}
    data = _read_yaml(path)
    targets = _parse_targets(data.get("targets"), path)
    logger.debug("Infrastructure loaded", path=str(path), targets=sorted(targets))
    return targets


def manifest_from_dict(data: Dict[str, Any], infrastructure: Optional[Dict[str, Target]] = None, source: str = "<memory>") -> Manifest:
    """Build a Manifest, resolving target names against the infrastructure.

    Targets declared in the infrastructure win over targets embedded in the
    manifest itself.
    """
    targets = _parse_targets(data.get("targets"), source)
    targets.update(infrastructure or {})
    try:
        return Manifest(
            activation=data.get("activation") or [],
            targets=targets,
            profiles=data.get("profiles") or [],
        )
    except ValidationError as exc:
        raise ManifestError(f"Invalid manifest {source}: {exc}", code="invalid_manifest") from exc


def load_manifest(path: Optional[PathLike], infrastructure: Optional[Dict[str, Target]] = None) -> Manifest:
    """Load a manifest file; ``None`` yields the empty manifest."""
    if path is None:
        return Manifest()
    data = _read_yaml(path)
    manifest = manifest_from_dict(data, infrastructure, source=str(path))
    logger.debug("Manifest loaded", path=str(path), mappings=len(manifest.activation))
    return manifest


def dump_manifest(manifest: Manifest) -> str:
    """Serialise a manifest in the format accepted by ``load_manifest``."""
    data = {
        "activation": [m.model_dump(exclude_none=True) for m in manifest.activation],
        "profiles": [p.model_dump() for p in manifest.profiles],
        "targets": {name: dict(t.properties) for name, t in manifest.targets.items()},
    }
    return yaml.safe_dump(data, sort_keys=False)
