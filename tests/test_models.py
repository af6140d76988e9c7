"""Tests for targets, mappings, manifests and settings."""

import pytest
from pydantic import ValidationError

from conftest import make_manifest, make_mapping, make_target
from rollover.core.config import Settings
from rollover.core.exceptions import ManifestError
from rollover.core.models import ActivationMapping, Manifest, MappingRef, ProfileMapping


class TestTarget:
    def test_address_from_property(self):
        target = make_target("test1")
        assert target.address() == "test1"

    def test_alternative_target_property(self):
        target = make_target("test1").model_copy(update={"properties": {"sshTarget": "10.0.0.1"}})
        assert target.address("sshTarget") == "10.0.0.1"

    def test_missing_property_raises(self):
        target = make_target("test1")
        with pytest.raises(ManifestError) as exc_info:
            target.address("sshTarget")
        assert exc_info.value.code == "missing_target_property"

    def test_targets_are_hashable(self):
        assert len({make_target("a"), make_target("a"), make_target("b")}) == 2


class TestActivationMapping:
    def test_identity_is_service_and_target(self):
        mapping = make_mapping("/nix/store/abc-db", "test2")
        assert mapping.key == MappingRef(service="/nix/store/abc-db", target="test2")
        assert str(mapping.key) == "/nix/store/abc-db@test2"

    def test_label_prefers_name(self):
        mapping = ActivationMapping(service="/nix/store/abc-db", name="db", type="process", target="test1")
        assert mapping.label == "db@test1"
        assert make_mapping("/nix/store/abc-db").label == "/nix/store/abc-db@test1"

    def test_environment_first_occurrence_wins(self):
        mapping = make_mapping("svc", arguments=["user=root", "port=3306", "user=admin", "flag"])
        assert mapping.environment() == {"user": "root", "port": "3306", "flag": ""}

    def test_frozen(self):
        mapping = make_mapping("svc")
        with pytest.raises(ValidationError):
            mapping.type = "wrapper"


class TestManifest:
    def test_valid_manifest(self):
        db = make_mapping("db", "test1")
        web = make_mapping("web", "test2", depends_on=[("db", "test1")])
        manifest = make_manifest(db, web)

        assert manifest.keys() == [db.key, web.key]
        assert manifest.find(web.key) == web
        assert manifest.find(MappingRef(service="web", target="test1")) is None

    def test_duplicate_mapping_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            make_manifest(make_mapping("db"), make_mapping("db"))

    def test_same_service_on_two_targets_allowed(self):
        manifest = make_manifest(make_mapping("db", "test1"), make_mapping("db", "test2"))
        assert len(manifest.activation) == 2

    def test_unknown_target_rejected(self):
        with pytest.raises(ValidationError, match="unknown target"):
            Manifest(activation=[make_mapping("db", "nowhere")], targets={})

    def test_dangling_dependency_rejected(self):
        with pytest.raises(ValidationError, match="unknown mapping"):
            make_manifest(make_mapping("web", depends_on=[("db", "test1")]))

    def test_profile_target_must_exist(self):
        with pytest.raises(ValidationError, match="Profile"):
            Manifest(profiles=[ProfileMapping(target="test1", derivation="/nix/store/p")])

    def test_referenced_targets(self):
        manifest = make_manifest(make_mapping("db", "test1"), targets=["test1", "test2"])
        assert set(manifest.referenced_targets()) == {"test1"}


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ROLLOVER_MAPPING_EQUALITY", raising=False)
        settings = Settings(_env_file=None)
        assert settings.port == 8800
        assert settings.client_interface == "http"
        assert settings.target_property == "hostname"
        assert settings.mapping_equality == "identity"
        assert settings.transition_timeout_seconds is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ROLLOVER_MAPPING_EQUALITY", "strict")
        monkeypatch.setenv("ROLLOVER_PORT", "9000")
        settings = Settings(_env_file=None)
        assert settings.mapping_equality == "strict"
        assert settings.port == 9000

    def test_invalid_equality(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, mapping_equality="fuzzy")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_invalid_timeout(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, transition_timeout_seconds=0)
