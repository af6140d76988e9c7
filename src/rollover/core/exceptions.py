"""Custom exceptions for Rollover."""

from typing import List, Optional


class RolloverError(Exception):
    """Base exception for all rollover errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(RolloverError):
    """Configuration error."""
    pass


class ManifestError(RolloverError):
    """Manifest or infrastructure model is invalid or unreadable."""
    pass


class DependencyCycleError(ManifestError):
    """Dependency relation of a manifest is not a DAG."""

    def __init__(self, cycle: List[str]):
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(cycle),
            code="dependency_cycle",
        )
        self.cycle = cycle


class LockAcquisitionError(RolloverError):
    """A target refused or failed its lock request."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"Cannot lock target {target}: {reason}", code="lock_failed")
        self.target = target


class TransportError(RolloverError):
    """The RPC call could not be issued or its signal not received."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"Transport failure for {address}: {reason}", code="transport")
        self.address = address


class TransitionTimeoutError(RolloverError):
    """The caller-supplied transition deadline expired."""
    pass


class BookkeepingError(RolloverError):
    """Recording the new deployment state failed."""
    pass


class JobError(RolloverError):
    """Job table misuse on the service side."""
    pass


class UnknownModuleError(RolloverError):
    """No activation module is registered for a type."""

    def __init__(self, module_type: str):
        super().__init__(f"No activation module for type: {module_type}", code="unknown_module")
        self.module_type = module_type
