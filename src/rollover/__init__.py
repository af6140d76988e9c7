"""Rollover - Dependency-ordered service deployment transitions."""

__version__ = "0.1.0"
__author__ = "Rollover Core Team"

from rollover.core.config import Settings
from rollover.core.models import ActivationMapping, Manifest, Target

__all__ = ["Settings", "ActivationMapping", "Manifest", "Target", "__version__"]
