"""Core data models for Rollover: targets, activation mappings and manifests."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rollover.core.exceptions import ManifestError


class Target(BaseModel):
    """A remote machine running the rollover service."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Identity of the target in the infrastructure model")
    properties: Dict[str, str] = Field(default_factory=dict, description="Free-form target properties")

    def address(self, target_property: str = "hostname") -> str:
        """Return the connection address stored under ``target_property``."""
        try:
            return self.properties[target_property]
        except KeyError:
            raise ManifestError(
                f"Target {self.name} has no property '{target_property}'",
                code="missing_target_property",
            ) from None

    def __hash__(self) -> int:
        return hash(self.name)


class MappingRef(BaseModel):
    """Identity of an activation mapping: a build reference on a target."""

    model_config = ConfigDict(frozen=True)

    service: str = Field(..., description="Content-derived build reference")
    target: str = Field(..., description="Name of the target it is deployed to")

    def __str__(self) -> str:
        return f"{self.service}@{self.target}"


class ActivationMapping(BaseModel):
    """One deployable unit on one target."""

    model_config = ConfigDict(frozen=True)

    service: str = Field(..., description="Content-derived build reference")
    name: Optional[str] = Field(None, description="Human-readable service name")
    type: str = Field(..., description="Activation type, selects the activation module")
    container: str = Field("", description="Container the service activates into")
    target: str = Field(..., description="Name of the owning target")
    arguments: List[str] = Field(default_factory=list, description="key=value activation arguments")
    depends_on: List[MappingRef] = Field(default_factory=list, description="Mappings that must be active first")

    @property
    def key(self) -> MappingRef:
        return MappingRef(service=self.service, target=self.target)

    @property
    def label(self) -> str:
        return f"{self.name or self.service}@{self.target}"

    def environment(self) -> Dict[str, str]:
        """Arguments as an ordered name/value mapping.

        A repeated name keeps its first value. Entries without ``=`` map
        to an empty string.
        """
        env: Dict[str, str] = {}
        for argument in self.arguments:
            name, _, value = argument.partition("=")
            if name and name not in env:
                env[name] = value
        return env

    def __hash__(self) -> int:
        return hash((self.service, self.target))


class ProfileMapping(BaseModel):
    """Profile derivation a target should point at after a transition."""

    target: str
    derivation: str


class Manifest(BaseModel):
    """Ordered activation mappings plus the targets they reference."""

    activation: List[ActivationMapping] = Field(default_factory=list)
    targets: Dict[str, Target] = Field(default_factory=dict)
    profiles: List[ProfileMapping] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self) -> "Manifest":
        seen = set()
        for mapping in self.activation:
            if mapping.key in seen:
                raise ValueError(f"Duplicate activation mapping: {mapping.key}")
            seen.add(mapping.key)
            if mapping.target not in self.targets:
                raise ValueError(f"Mapping {mapping.key} references unknown target {mapping.target}")
        for mapping in self.activation:
            for dep in mapping.depends_on:
                if dep not in seen:
                    raise ValueError(f"Mapping {mapping.key} depends on unknown mapping {dep}")
        for profile in self.profiles:
            if profile.target not in self.targets:
                raise ValueError(f"Profile references unknown target {profile.target}")
        return self

    def keys(self) -> List[MappingRef]:
        return [m.key for m in self.activation]

    def find(self, key: MappingRef) -> Optional[ActivationMapping]:
        for mapping in self.activation:
            if mapping.key == key:
                return mapping
        return None

    def referenced_targets(self) -> Dict[str, Target]:
        """Targets used by at least one mapping or profile."""
        names = {m.target for m in self.activation} | {p.target for p in self.profiles}
        return {name: self.targets[name] for name in names}
