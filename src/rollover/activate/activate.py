"""Transition driver: from two manifest files to a process exit status."""

from __future__ import annotations

import asyncio
import os
import uuid
from enum import IntEnum
from pathlib import Path
from typing import Optional, Union

import aiofiles
import structlog

from rollover.activate.plan import get_equality
from rollover.activate.transition import AbortReason, TransitionEngine, TransitionResult
from rollover.client.jobs import RemoteJobClient
from rollover.client.transport import JobTransport, get_transport
from rollover.core.config import Settings
from rollover.core.exceptions import (
    BookkeepingError,
    ConfigurationError,
    ManifestError,
    TransitionTimeoutError,
    TransportError,
)
from rollover.core.models import Manifest, Target
from rollover.manifest.loader import dump_manifest, load_infrastructure, load_manifest
from rollover.utils.logging import bind_transition_context

logger = structlog.get_logger()

MANIFEST_FILE = "manifest.yaml"


class ExitCode(IntEnum):
    SUCCESS = 0
    TRANSITION_FAILED = 1
    LOCK_FAILED = 2
    BOOKKEEPING_FAILED = 3
    INVALID_CONFIGURATION = 4


def coordinator_manifest_path(coordinator_profile_path: Union[str, Path], profile: str) -> Path:
    return Path(coordinator_profile_path) / profile / MANIFEST_FILE


async def record_coordinator_profile(manifest: Manifest, coordinator_profile_path: Union[str, Path], profile: str) -> Path:
    """Atomically store ``manifest`` as the current deployment state."""
    dest = coordinator_manifest_path(coordinator_profile_path, profile)
    tmp_file = dest.with_suffix(".writing")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(tmp_file, "w") as f:
            await f.write(dump_manifest(manifest))
        os.replace(tmp_file, dest)
    except OSError as exc:
        raise BookkeepingError(f"Cannot record deployment state at {dest}: {exc}") from exc
    logger.info("Coordinator profile updated", path=str(dest))
    return dest


async def set_target_profiles(client: RemoteJobClient, manifest: Manifest, profile: str) -> None:
    """Point every target's profile at the derivation the manifest names."""
    if not manifest.profiles:
        return

    targets = [manifest.targets[p.target] for p in manifest.profiles]
    futures = [client.set_profile(t, profile, p.derivation) for t, p in zip(targets, manifest.profiles)]
    results = await asyncio.gather(*futures, return_exceptions=True)

    failed = []
    for target, result in zip(targets, results):
        if isinstance(result, (TransportError, ManifestError)):
            logger.error("Cannot set target profile", target=target.name, error=str(result))
            failed.append(target.name)
        elif isinstance(result, BaseException):
            raise result
        elif not result.success:
            logger.error("Target profile job failed", target=target.name)
            failed.append(target.name)
    if failed:
        raise BookkeepingError(f"Setting profile {profile} failed on: {', '.join(sorted(failed))}")


async def run_with_deadline(engine: TransitionEngine, deadline: Optional[float]) -> TransitionResult:
    """Run the engine, giving up after ``deadline`` seconds when set.

    Locks are released before TransitionTimeoutError propagates.
    """
    try:
        async with asyncio.timeout(deadline):
            return await engine.run()
    except TimeoutError as exc:
        raise TransitionTimeoutError(f"Transition exceeded {deadline} seconds", code="timeout") from exc


def _exit_code_for(result: TransitionResult) -> ExitCode:
    if result.abort_reason == AbortReason.DEPENDENCY_CYCLE:
        return ExitCode.INVALID_CONFIGURATION
    if result.abort_reason == AbortReason.LOCK_ACQUISITION:
        return ExitCode.LOCK_FAILED
    if not result.succeeded:
        return ExitCode.TRANSITION_FAILED
    return ExitCode.SUCCESS


async def activate_system(
    interface: Union[str, JobTransport],
    infrastructure: Optional[Union[str, Path]],
    new_manifest: Union[str, Path],
    old_manifest: Optional[Union[str, Path]],
    coordinator_profile_path: Union[str, Path],
    profile: str = "default",
    target_property: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
) -> ExitCode:
    """Activate the deployment described by ``new_manifest``.

    Obsolete services of ``old_manifest`` are deactivated and new ones
    activated in dependency order while every involved target is locked.
    Without an explicit ``old_manifest`` the state last recorded under
    ``coordinator_profile_path`` is used. On success the new manifest
    becomes the recorded state.
    """
    settings = settings or Settings()
    target_property = target_property or settings.target_property
    bind_transition_context(profile=profile, transition_id=uuid.uuid4().hex[:12])

    try:
        equality = get_equality(settings.mapping_equality)
        targets = load_infrastructure(infrastructure)
        new = load_manifest(new_manifest, targets)
        if old_manifest is None:
            recorded = coordinator_manifest_path(coordinator_profile_path, profile)
            old_manifest = recorded if recorded.exists() else None
            logger.info("Using recorded deployment state", path=str(old_manifest) if old_manifest else None)
        old = load_manifest(old_manifest, targets)
    except (ManifestError, ConfigurationError) as exc:
        logger.error("Cannot load deployment configuration", error=str(exc))
        return ExitCode.INVALID_CONFIGURATION

    all_targets: dict[str, Target] = {**old.targets, **new.targets}

    owns_transport = isinstance(interface, str)
    try:
        transport = (
            get_transport(
                interface,
                timeout=settings.request_timeout_seconds,
                signal_wait=settings.signal_wait_seconds,
            )
            if isinstance(interface, str)
            else interface
        )
    except ConfigurationError as exc:
        logger.error("Cannot create client interface", error=str(exc))
        return ExitCode.INVALID_CONFIGURATION

    client = RemoteJobClient(transport, all_targets, target_property)
    engine = TransitionEngine(client, new, old, equality=equality)

    try:
        try:
            result = await run_with_deadline(engine, settings.transition_timeout_seconds)
        except TransitionTimeoutError as exc:
            logger.error("Transition timed out", error=str(exc), state=engine.state.value)
            return ExitCode.TRANSITION_FAILED

        exit_code = _exit_code_for(result)
        if exit_code != ExitCode.SUCCESS:
            logger.error(
                "Transition failed",
                exit_code=int(exit_code),
                error=result.error,
                failed=[str(o.key) for o in result.failed],
                skipped=[str(o.key) for o in result.skipped],
                unlock_failures=result.unlock_failures,
            )
            return exit_code

        try:
            await set_target_profiles(client, new, profile)
            await record_coordinator_profile(new, coordinator_profile_path, profile)
        except BookkeepingError as exc:
            logger.error("Bookkeeping failed", error=str(exc))
            return ExitCode.BOOKKEEPING_FAILED

        logger.info(
            "Deployment activated",
            deactivated=len(result.deactivations),
            activated=len(result.activations),
        )
        return ExitCode.SUCCESS
    finally:
        if owns_transport:
            await transport.close()


def run_activate_system(*args, **kwargs) -> int:
    """Blocking wrapper around ``activate_system``."""
    return int(asyncio.run(activate_system(*args, **kwargs)))
