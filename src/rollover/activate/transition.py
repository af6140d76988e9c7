"""Transition engine: lock, deactivate, activate, unlock.

The engine walks ``INIT -> LOCKING -> DEACTIVATING -> ACTIVATING ->
UNLOCKING -> DONE``; ``ABORTED`` is reachable from every non-terminal
state. Within a phase every mapping whose ordering constraints are met is
dispatched at once and the engine reacts to each future as it resolves.
Failures are recorded per mapping and never undone.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog

from rollover.activate.locks import LockCoordinator
from rollover.activate.plan import MappingEquality, TransitionPlan, same_identity
from rollover.client.jobs import JobOutcome, RemoteJobClient
from rollover.core.exceptions import (
    DependencyCycleError,
    LockAcquisitionError,
    ManifestError,
    TransportError,
)
from rollover.core.models import ActivationMapping, Manifest, MappingRef

logger = structlog.get_logger()


class TransitionState(str, Enum):
    INIT = "init"
    LOCKING = "locking"
    DEACTIVATING = "deactivating"
    ACTIVATING = "activating"
    UNLOCKING = "unlocking"
    DONE = "done"
    ABORTED = "aborted"


_NEXT_STATE = {
    TransitionState.INIT: TransitionState.LOCKING,
    TransitionState.LOCKING: TransitionState.DEACTIVATING,
    TransitionState.DEACTIVATING: TransitionState.ACTIVATING,
    TransitionState.ACTIVATING: TransitionState.UNLOCKING,
    TransitionState.UNLOCKING: TransitionState.DONE,
}

TERMINAL_STATES = {TransitionState.DONE, TransitionState.ABORTED}


class Phase(str, Enum):
    DEACTIVATE = "deactivate"
    ACTIVATE = "activate"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    REMOTE_OPERATION = "remote_operation"
    TRANSPORT = "transport"
    PROPAGATED_SKIP = "propagated_skip"


class AbortReason(str, Enum):
    DEPENDENCY_CYCLE = "dependency_cycle"
    LOCK_ACQUISITION = "lock_acquisition"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class MappingOutcome:
    key: MappingRef
    phase: Phase
    status: OutcomeStatus
    failure: Optional[FailureKind] = None
    message: Optional[str] = None
    lines: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


@dataclass
class TransitionResult:
    state: TransitionState = TransitionState.INIT
    deactivations: Dict[MappingRef, MappingOutcome] = field(default_factory=dict)
    activations: Dict[MappingRef, MappingOutcome] = field(default_factory=dict)
    unlock_failures: List[str] = field(default_factory=list)
    abort_reason: Optional[AbortReason] = None
    error: Optional[str] = None
    history: List[TransitionState] = field(default_factory=list)

    @property
    def failed(self) -> List[MappingOutcome]:
        outcomes = list(self.deactivations.values()) + list(self.activations.values())
        return [o for o in outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def skipped(self) -> List[MappingOutcome]:
        return [o for o in self.activations.values() if o.status == OutcomeStatus.SKIPPED]

    @property
    def succeeded(self) -> bool:
        return (
            self.state == TransitionState.DONE
            and not self.failed
            and not self.skipped
            and not self.unlock_failures
        )


Operation = Callable[[ActivationMapping], Awaitable[JobOutcome]]


class TransitionEngine:
    """Moves the deployment from ``old`` to ``new``."""

    def __init__(
        self,
        client: RemoteJobClient,
        new: Manifest,
        old: Manifest,
        equality: MappingEquality = same_identity,
        locks: Optional[LockCoordinator] = None,
    ):
        self.client = client
        self.new = new
        self.old = old
        self.equality = equality
        self.locks = locks or LockCoordinator(client)
        self.result = TransitionResult()
        self.plan: Optional[TransitionPlan] = None

    @property
    def state(self) -> TransitionState:
        return self.result.state

    def _enter(self, state: TransitionState) -> None:
        current = self.result.state
        if current in TERMINAL_STATES:
            raise RuntimeError(f"Transition already finished in state {current.value}")
        if state != TransitionState.ABORTED and _NEXT_STATE.get(current) != state:
            raise RuntimeError(f"Illegal transition {current.value} -> {state.value}")
        logger.info("Transition state changed", from_state=current.value, to_state=state.value)
        self.result.history.append(current)
        self.result.state = state
        if state in TERMINAL_STATES:
            self.result.history.append(state)

    def _abort(self, reason: AbortReason, error: str) -> TransitionResult:
        self.result.abort_reason = reason
        self.result.error = error
        self._enter(TransitionState.ABORTED)
        logger.error("Transition aborted", reason=reason.value, error=error)
        return self.result

    async def run(self) -> TransitionResult:
        if self.result.state != TransitionState.INIT:
            raise RuntimeError("A transition engine runs once")

        try:
            self.plan = TransitionPlan.compute(self.old, self.new, self.equality)
        except DependencyCycleError as exc:
            return self._abort(AbortReason.DEPENDENCY_CYCLE, str(exc))

        plan = self.plan
        logger.info(
            "Transition planned",
            deactivate=[m.label for m in plan.to_deactivate],
            activate=[m.label for m in plan.to_activate],
            targets=[t.name for t in plan.lock_set],
        )

        self._enter(TransitionState.LOCKING)
        try:
            async with self.locks.hold(plan.lock_set) as handle:
                self._enter(TransitionState.DEACTIVATING)
                self.result.deactivations = await self._run_phase(
                    Phase.DEACTIVATE,
                    plan.to_deactivate,
                    plan.deactivate_after,
                    self.client.deactivate,
                    skip_on_failure=False,
                )

                self._enter(TransitionState.ACTIVATING)
                self.result.activations = await self._run_phase(
                    Phase.ACTIVATE,
                    plan.to_activate,
                    plan.activate_after,
                    self.client.activate,
                    skip_on_failure=True,
                )

                self._enter(TransitionState.UNLOCKING)
        except LockAcquisitionError as exc:
            return self._abort(AbortReason.LOCK_ACQUISITION, str(exc))
        except BaseException as exc:
            if self.result.state not in TERMINAL_STATES:
                self._abort(AbortReason.INTERRUPTED, repr(exc))
            raise

        self.result.unlock_failures = list(handle.release_failures)
        self._enter(TransitionState.DONE)

        logger.info(
            "Transition finished",
            succeeded=self.result.succeeded,
            failed=[str(o.key) for o in self.result.failed],
            skipped=[str(o.key) for o in self.result.skipped],
            unlock_failures=self.result.unlock_failures,
        )
        return self.result

    async def _invoke(self, phase: Phase, mapping: ActivationMapping, operation: Operation) -> MappingOutcome:
        try:
            outcome = await operation(mapping)
        except (TransportError, ManifestError) as exc:
            logger.error("Transport failure", phase=phase.value, mapping=mapping.label, error=str(exc))
            return MappingOutcome(
                key=mapping.key,
                phase=phase,
                status=OutcomeStatus.FAILED,
                failure=FailureKind.TRANSPORT,
                message=str(exc),
            )
        if outcome.success:
            logger.info("Mapping succeeded", phase=phase.value, mapping=mapping.label)
            return MappingOutcome(key=mapping.key, phase=phase, status=OutcomeStatus.SUCCEEDED, lines=outcome.lines)
        logger.error("Mapping failed", phase=phase.value, mapping=mapping.label, job_id=outcome.job_id)
        return MappingOutcome(
            key=mapping.key,
            phase=phase,
            status=OutcomeStatus.FAILED,
            failure=FailureKind.REMOTE_OPERATION,
            message=f"{phase.value} job reported failure",
            lines=outcome.lines,
        )

    async def _run_phase(
        self,
        phase: Phase,
        mappings: List[ActivationMapping],
        prerequisites: Dict[MappingRef, Set[MappingRef]],
        operation: Operation,
        skip_on_failure: bool,
    ) -> Dict[MappingRef, MappingOutcome]:
        """Dispatch ``mappings`` as their prerequisites resolve.

        With ``skip_on_failure`` a mapping whose prerequisite did not
        succeed is recorded as skipped and never dispatched; otherwise any
        resolution of a prerequisite unblocks it.
        """
        outcomes: Dict[MappingRef, MappingOutcome] = {}
        pending = list(mappings)
        running: Dict[asyncio.Task, ActivationMapping] = {}

        def dispatch_ready() -> None:
            progressed = True
            while progressed:
                progressed = False
                for mapping in list(pending):
                    waits_for = prerequisites.get(mapping.key, set())
                    if not waits_for.issubset(outcomes):
                        continue
                    pending.remove(mapping)
                    progressed = True
                    blocked_by = sorted(str(k) for k in waits_for if not outcomes[k].succeeded)
                    if skip_on_failure and blocked_by:
                        logger.warning(
                            "Mapping skipped",
                            phase=phase.value,
                            mapping=mapping.label,
                            failed_dependencies=blocked_by,
                        )
                        outcomes[mapping.key] = MappingOutcome(
                            key=mapping.key,
                            phase=phase,
                            status=OutcomeStatus.SKIPPED,
                            failure=FailureKind.PROPAGATED_SKIP,
                            message="dependency failed: " + ", ".join(blocked_by),
                        )
                        continue
                    logger.info("Dispatching", phase=phase.value, mapping=mapping.label)
                    task = asyncio.create_task(self._invoke(phase, mapping, operation))
                    running[task] = mapping

        try:
            dispatch_ready()
            while running:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    mapping = running.pop(task)
                    outcomes[mapping.key] = task.result()
                dispatch_ready()
        finally:
            # remote jobs keep running; only stop awaiting them locally
            for task in running:
                task.cancel()

        if pending:
            raise RuntimeError(f"Unschedulable mappings in {phase.value} phase: {[m.label for m in pending]}")
        return {m.key: outcomes[m.key] for m in mappings}
