"""Tests for manifest and infrastructure loading."""

import pytest

from rollover.core.exceptions import ManifestError
from rollover.core.models import MappingRef
from rollover.manifest.loader import (
    dump_manifest,
    load_infrastructure,
    load_manifest,
    manifest_from_dict,
)

INFRASTRUCTURE = """
targets:
  test1:
    hostname: test1.example.org
    system: x86_64-linux
  test2:
    hostname: test2.example.org
"""

MANIFEST = """
activation:
  - service: /nix/store/aaa-db
    name: db
    type: mysql-database
    container: mysql-database
    target: test1
    arguments: ["mysqlUsername=root"]
  - service: /nix/store/bbb-webapp
    name: webapp
    type: process
    target: test2
    depends_on:
      - service: /nix/store/aaa-db
        target: test1
profiles:
  - target: test1
    derivation: /nix/store/ppp-profile-test1
"""


@pytest.fixture
def infra_file(tmp_path):
    path = tmp_path / "infrastructure.yaml"
    path.write_text(INFRASTRUCTURE)
    return path


@pytest.fixture
def manifest_file(tmp_path):
    path = tmp_path / "manifest.yaml"
    path.write_text(MANIFEST)
    return path


def test_load_infrastructure(infra_file):
    targets = load_infrastructure(infra_file)
    assert sorted(targets) == ["test1", "test2"]
    assert targets["test1"].address() == "test1.example.org"
    assert targets["test1"].properties["system"] == "x86_64-linux"


def test_load_infrastructure_none():
    assert load_infrastructure(None) == {}


def test_load_manifest(infra_file, manifest_file):
    manifest = load_manifest(manifest_file, load_infrastructure(infra_file))

    assert [m.name for m in manifest.activation] == ["db", "webapp"]
    webapp = manifest.activation[1]
    assert webapp.depends_on == [MappingRef(service="/nix/store/aaa-db", target="test1")]
    assert manifest.activation[0].environment() == {"mysqlUsername": "root"}
    assert manifest.profiles[0].derivation == "/nix/store/ppp-profile-test1"


def test_load_manifest_none_is_empty():
    manifest = load_manifest(None)
    assert manifest.activation == []
    assert manifest.targets == {}


def test_missing_file(tmp_path):
    with pytest.raises(ManifestError) as exc_info:
        load_manifest(tmp_path / "missing.yaml")
    assert exc_info.value.code == "not_found"


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("activation: [unclosed")
    with pytest.raises(ManifestError) as exc_info:
        load_manifest(path)
    assert exc_info.value.code == "invalid_yaml"


def test_directory_is_unreadable(tmp_path):
    with pytest.raises(ManifestError) as exc_info:
        load_manifest(tmp_path)
    assert exc_info.value.code == "unreadable"


def test_undecodable_file(tmp_path):
    path = tmp_path / "binary.yaml"
    path.write_bytes(b"activation: \xff\xfe\xfa\n")
    with pytest.raises(ManifestError):
        load_infrastructure(path)


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ManifestError):
        load_infrastructure(path)


def test_unknown_target_is_manifest_error(manifest_file):
    # no infrastructure: test1/test2 are unknown
    with pytest.raises(ManifestError) as exc_info:
        load_manifest(manifest_file)
    assert exc_info.value.code == "invalid_manifest"


def test_infrastructure_overrides_embedded_targets(infra_file):
    data = {
        "activation": [{"service": "s", "type": "process", "target": "test1"}],
        "targets": {"test1": {"hostname": "old.example.org"}},
    }
    manifest = manifest_from_dict(data, load_infrastructure(infra_file))
    assert manifest.targets["test1"].address() == "test1.example.org"


def test_embedded_targets_used_without_infrastructure():
    data = {
        "activation": [{"service": "s", "type": "process", "target": "gone"}],
        "targets": {"gone": {"hostname": "gone.example.org"}},
    }
    manifest = manifest_from_dict(data)
    assert manifest.targets["gone"].address() == "gone.example.org"


def test_dumped_manifest_reloads_without_infrastructure(infra_file, manifest_file, tmp_path):
    manifest = load_manifest(manifest_file, load_infrastructure(infra_file))
    recorded = tmp_path / "recorded.yaml"
    recorded.write_text(dump_manifest(manifest))

    reloaded = load_manifest(recorded)
    assert reloaded == manifest
