"""RPC method implementations of the rollover service.

Every method is fire-and-forget: the caller gets an acknowledgement as
soon as the work is scheduled, the outcome is delivered later as exactly one
signal for the job id (``finish``, ``failure`` or ``success`` with output
lines).
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Coroutine, Dict, List, Optional, Sequence, Set, Tuple

import aiofiles
import structlog

from rollover.core.exceptions import JobError, UnknownModuleError
from rollover.service.context import ServiceContext
from rollover.service.models import SignalKind

logger = structlog.get_logger()


def activation_environment(arguments: Sequence[str], base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Process environment for an activation module.

    ``key=value`` arguments are added without overwriting variables that are
    already set.
    """
    env = dict(os.environ if base is None else base)
    for argument in arguments:
        key, sep, value = argument.partition("=")
        if not sep or not key:
            logger.warning("Ignoring malformed activation argument", argument=argument)
            continue
        env.setdefault(key, value)
    return env


async def run_command(
    *cmd: str,
    env: Optional[Dict[str, str]] = None,
    stdin_path: Optional[Path] = None,
) -> Tuple[int, List[str]]:
    """Run ``cmd`` to completion; return its exit status and stdout lines."""
    stdin = open(stdin_path, "rb") if stdin_path is not None else subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            env=env,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    finally:
        if stdin_path is not None:
            stdin.close()

    lines = stdout.decode(errors="replace").splitlines()
    for line in stderr.decode(errors="replace").splitlines():
        logger.info("Command stderr", command=cmd[0], line=line)
    return proc.returncode, lines


class ServiceMethods:
    """Schedules jobs and emits their signals into the context's job table."""

    def __init__(self, context: ServiceContext):
        self.context = context
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, job_id: int, method: str, work: Coroutine) -> None:
        try:
            self.context.jobs.start(job_id, method)
        except JobError:
            work.close()
            raise
        task = asyncio.create_task(self._run_job(job_id, method, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job_id: int, method: str, work: Coroutine) -> None:
        log = logger.bind(job_id=job_id, method=method)
        try:
            signal, lines = await work
        except (OSError, UnknownModuleError) as exc:
            log.error("Job failed", error=str(exc))
            signal, lines = SignalKind.FAILURE, []
        except Exception:
            log.exception("Job crashed")
            signal, lines = SignalKind.FAILURE, []
        self.context.jobs.emit(job_id, signal, lines)

    async def shutdown(self) -> None:
        """Wait for outstanding jobs; child processes are never killed."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @staticmethod
    def _finish(status: int) -> SignalKind:
        return SignalKind.FINISH if status == 0 else SignalKind.FAILURE

    # Activation

    async def _activation(self, operation: str, derivation: str, module_type: str, arguments: List[str]):
        module = self.context.modules.resolve(module_type)
        logger.info(
            "Running activation module",
            operation=operation,
            derivation=derivation,
            type=module_type,
            module=str(module),
            arguments=arguments,
        )
        status, lines = await run_command(
            str(module), operation, derivation, env=activation_environment(arguments)
        )
        for line in lines:
            logger.info("Module output", derivation=derivation, line=line)
        return self._finish(status), []

    def activate(self, job_id: int, derivation: str, module_type: str, arguments: List[str]) -> None:
        self._spawn(job_id, "activate", self._activation("activate", derivation, module_type, arguments))

    def deactivate(self, job_id: int, derivation: str, module_type: str, arguments: List[str]) -> None:
        self._spawn(job_id, "deactivate", self._activation("deactivate", derivation, module_type, arguments))

    # Locking

    async def _run_hook(self, hook: Optional[str]) -> int:
        if not hook:
            return 0
        status, _ = await run_command(hook)
        return status

    async def _lock(self):
        async with self.context.lock_guard:
            if self.context.locked:
                logger.warning("Target is already locked")
                return SignalKind.FAILURE, []
            if await self._run_hook(self.context.lock_manager) != 0:
                logger.warning("Lock manager refused lock", hook=self.context.lock_manager)
                return SignalKind.FAILURE, []
            self.context.locked = True
        logger.info("Target locked")
        return SignalKind.FINISH, []

    async def _unlock(self):
        async with self.context.lock_guard:
            status = await self._run_hook(self.context.unlock_manager)
            self.context.locked = False
        logger.info("Target unlocked")
        return self._finish(status), []

    def lock(self, job_id: int) -> None:
        self._spawn(job_id, "lock", self._lock())

    def unlock(self, job_id: int) -> None:
        self._spawn(job_id, "unlock", self._unlock())

    # Build artifacts

    async def _import(self, closure: str):
        logger.info("Importing closure", closure=closure)
        status, _ = await run_command("nix-store", "--import", stdin_path=Path(closure))
        return self._finish(status), []

    async def _export(self, derivations: List[str]):
        logger.info("Exporting closure", derivations=derivations)
        fd, closure = tempfile.mkstemp(prefix="rollover.", dir=self.context.tmp_dir)
        os.close(fd)
        try:
            status, _ = await run_command("sh", "-c", 'exec nix-store --export "$@" > "$0"', closure, *derivations)
        except BaseException:
            os.unlink(closure)
            raise
        if status != 0:
            os.unlink(closure)
            return SignalKind.FAILURE, []
        return SignalKind.SUCCESS, [closure]

    async def _store_query(self, description: str, args: List[str], derivations: List[str]):
        logger.info(description, derivations=derivations)
        status, lines = await run_command("nix-store", *args, *derivations)
        if status != 0:
            return SignalKind.FAILURE, []
        return SignalKind.SUCCESS, lines

    def import_closure(self, job_id: int, closure: str) -> None:
        self._spawn(job_id, "import", self._import(closure))

    def export(self, job_id: int, derivations: List[str]) -> None:
        self._spawn(job_id, "export", self._export(derivations))

    def print_invalid(self, job_id: int, derivations: List[str]) -> None:
        work = self._store_query("Checking validity", ["--check-validity", "--print-invalid"], derivations)
        self._spawn(job_id, "print-invalid", work)

    def realise(self, job_id: int, derivations: List[str]) -> None:
        self._spawn(job_id, "realise", self._store_query("Realising", ["-r"], derivations))

    def query_requisites(self, job_id: int, derivations: List[str]) -> None:
        self._spawn(job_id, "query-requisites", self._store_query("Query requisites", ["-qR"], derivations))

    # Profiles

    def profile_path(self, profile: str) -> Path:
        return self.context.profiles_dir / profile

    async def _set(self, profile: str, derivation: str):
        logger.info("Setting profile", profile=profile, derivation=derivation)
        self.context.profiles_dir.mkdir(parents=True, exist_ok=True)
        status, _ = await run_command("nix-env", "-p", str(self.profile_path(profile)), "--set", derivation)
        return self._finish(status), []

    async def _query_installed(self, profile: str):
        manifest = self.profile_path(profile) / "manifest"
        logger.info("Querying installed derivations", profile=profile, path=str(manifest))
        async with aiofiles.open(manifest) as f:
            content = await f.read()
        return SignalKind.SUCCESS, content.splitlines()

    async def _collect_garbage(self, delete_old: bool):
        cmd = ["nix-collect-garbage", "-d"] if delete_old else ["nix-collect-garbage"]
        logger.info("Collecting garbage", delete_old=delete_old)
        status, _ = await run_command(*cmd)
        return self._finish(status), []

    def set(self, job_id: int, profile: str, derivation: str) -> None:
        self._spawn(job_id, "set", self._set(profile, derivation))

    def query_installed(self, job_id: int, profile: str) -> None:
        self._spawn(job_id, "query-installed", self._query_installed(profile))

    def collect_garbage(self, job_id: int, delete_old: bool) -> None:
        self._spawn(job_id, "collect-garbage", self._collect_garbage(delete_old))
