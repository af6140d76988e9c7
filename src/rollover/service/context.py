"""Explicit state of one rollover service instance."""

from __future__ import annotations

import asyncio
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

import structlog

from rollover.core.config import Settings
from rollover.core.exceptions import UnknownModuleError
from rollover.service.jobs import JobTable

logger = structlog.get_logger()


class JobCounter:
    """Monotonically increasing job identifiers, starting at 0."""

    def __init__(self, start: int = 0):
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            job_id = self._next
            self._next += 1
        logger.debug("Assigned job id", job_id=job_id)
        return job_id

    def issued(self, job_id: int) -> bool:
        with self._lock:
            return 0 <= job_id < self._next


class ActivationModuleRegistry:
    """Resolves an activation type to the executable implementing it.

    Explicit registrations win; otherwise ``<modules_dir>/<type>`` is used
    when it is an executable file.
    """

    def __init__(self, modules_dir: Optional[Path] = None):
        self.modules_dir = modules_dir
        self._registered: Dict[str, Path] = {}

    def register(self, module_type: str, executable: Union[str, Path]) -> None:
        self._registered[module_type] = Path(executable)

    def resolve(self, module_type: str) -> Path:
        if module_type in self._registered:
            return self._registered[module_type]
        # a type names a file directly inside the modules dir, nothing else
        if self.modules_dir is not None and module_type and "/" not in module_type and module_type not in (".", ".."):
            candidate = self.modules_dir / module_type
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        raise UnknownModuleError(module_type)


@dataclass
class ServiceContext:
    """Everything the RPC handlers share, built once at start-up."""

    modules: ActivationModuleRegistry
    profiles_dir: Path
    tmp_dir: Path = Path("/tmp")
    lock_manager: Optional[str] = None
    unlock_manager: Optional[str] = None
    counter: JobCounter = field(default_factory=JobCounter)
    jobs: JobTable = field(default_factory=JobTable)
    locked: bool = False
    lock_guard: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContext":
        return cls(
            modules=ActivationModuleRegistry(settings.activation_modules_dir),
            profiles_dir=settings.profiles_dir,
            tmp_dir=settings.tmp_dir,
            lock_manager=settings.lock_manager,
            unlock_manager=settings.unlock_manager,
            jobs=JobTable(retention=settings.signal_retention_seconds),
        )
