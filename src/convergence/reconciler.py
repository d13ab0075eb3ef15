"""Reconciler: drive one resource type's instances toward their specs.

Each entry point issues exactly one mutating remote call and then hands
over to the Wait Engine for convergence:

1. create: Absent -> Creating -> Present (or Failed)
2. update: Present -> Updating -> Present (or Failed); empty Diff is a no-op
3. delete: Present -> Deleting -> Deleted (or Failed); already absent is success
4. apply: decides between create, no-op, update and replace using the Diff

CONCURRENCY:
At most one mutating operation is in flight per identifier. A second
writer for the same identifier fails fast with ConcurrentOperationError
instead of queueing behind the first. Distinct identifiers are fully
independent and can be reconciled in parallel.

Errors from the mutating call or the wait are re-raised unchanged in
kind, with the identifier and last known record attached.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import EngineConfig, ProviderContext
from .drift import Diff, DriftDetector
from .errors import (
    CallError,
    ConcurrentOperationError,
    EngineError,
    InvalidTransitionError,
    NotFoundError,
    SpecValidationError,
)
from .handlers import ResourceHandler
from .models import (
    LifecycleState,
    Operation,
    ResourceRecord,
    ResourceSpec,
    WaitSpec,
    can_transition,
)
from .poller import StatePoller
from .profiles import WaitProfiles, load_wait_profiles
from .transport import Transport
from .waiter import Waiter

logger = logging.getLogger(__name__)

# Deleted identifiers remembered after their session is dropped
MAX_DELETED_TOMBSTONES = 1024


class ApplyAction(str, Enum):
    """What apply() decided to do."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NO_OP = "no_op"


@dataclass
class ApplyResult:
    """Result of a single apply."""

    resource_type: str
    action: ApplyAction
    record: ResourceRecord | None = None
    diff: Diff = field(default_factory=Diff)
    replaced_id: str | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changed(self) -> bool:
        return self.action != ApplyAction.NO_OP


@dataclass
class RefreshResult:
    """Fresh observation of a stored record."""

    record: ResourceRecord | None
    drift: Diff = field(default_factory=Diff)

    @property
    def gone(self) -> bool:
        """True when the resource disappeared out of band."""
        return self.record is None


@dataclass
class _Session:
    """Lifecycle of one identifier."""

    state: LifecycleState
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    record: ResourceRecord | None = None


class Reconciler:
    """Create/update/delete orchestration for one resource type.

    The reconciler:
    1. Validates the spec against the handler's schema
    2. Issues one mutating call through the transport
    3. Waits for convergence via the Wait Engine and State Poller
    4. Stores the normalized record for the identifier
    """

    def __init__(
        self,
        handler: ResourceHandler,
        transport: Transport,
        context: ProviderContext,
        config: EngineConfig | None = None,
        *,
        waiter: Waiter | None = None,
        profiles: WaitProfiles | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            handler: Capability set for the resource type.
            transport: Remote-call seam.
            context: Provider-wide values passed to expand().
            config: Engine configuration; defaults when omitted.
            waiter: Wait engine; a default Waiter when omitted.
            profiles: Per-resource-type WaitSpec overrides. Loaded from
                ``config.profiles_path`` when omitted and the path is set.

        Raises:
            ProfileLoadError: If the profiles cannot be loaded, or produce an
                invalid WaitSpec for this resource type.
        """
        self._handler = handler
        self._transport = transport
        self._context = context
        self._config = config or EngineConfig()
        self._waiter = waiter or Waiter()
        if profiles is None and self._config.profiles_path is not None:
            profiles = load_wait_profiles(self._config.profiles_path)
        self._profiles = profiles
        self._poller = StatePoller(handler, transport)
        self._drift = DriftDetector(handler.schema)
        self._sessions: dict[str, _Session] = {}
        self._deleted: OrderedDict[str, None] = OrderedDict()

        # Surface profile problems at construction, not mid-operation
        for operation in handler.wait_states:
            self.wait_spec(operation)

    @property
    def resource_type(self) -> str:
        return self._handler.type_name

    @property
    def drift_detector(self) -> DriftDetector:
        return self._drift

    def state_of(self, resource_id: str) -> LifecycleState:
        """Current lifecycle state of an identifier.

        Identifiers this reconciler has never seen are assumed Present:
        the caller persisted a record for them. Deleted identifiers report
        Deleted while they are among the last MAX_DELETED_TOMBSTONES deletions.
        """
        session = self._sessions.get(resource_id)
        if session is not None:
            return session.state
        if resource_id in self._deleted:
            return LifecycleState.DELETED
        return LifecycleState.PRESENT

    def wait_spec(self, operation: Operation) -> WaitSpec:
        """WaitSpec for an operation, with profile overrides applied."""
        spec = self._handler.wait_spec(operation, self._config)
        if self._profiles is not None:
            spec = self._profiles.apply(self.resource_type, operation, spec)
        return spec

    # =========================================================================
    # Entry points
    # =========================================================================

    async def create(
        self, spec: ResourceSpec, *, cancel: asyncio.Event | None = None
    ) -> ResourceRecord:
        """Create a resource and wait until it is Present.

        Args:
            spec: Desired configuration.
            cancel: Event the caller sets to stop waiting.

        Returns:
            Converged record.

        Raises:
            SpecValidationError: If the spec does not satisfy the schema.
            CallError: If the create call failed (not retried).
            ConcurrentOperationError: If the handler knows the identifier up
                front and another operation holds it. No call is issued.
            InvalidTransitionError: If the known identifier is already Present
                or in flight. No call is issued.
            WaitTimeoutError, TerminalStateError, CancellationError: If the
                wait failed. The identifier is attached for cleanup.
        """
        self._validate(spec)
        payload = self._handler.expand(spec, self._context)

        resource_id = self._handler.desired_id(payload)
        if resource_id:
            # Claim the identifier before anything reaches the remote
            session = self._session(resource_id, LifecycleState.ABSENT)
            async with self._exclusive(resource_id, session):
                self._transition(resource_id, session, LifecycleState.CREATING)
                try:
                    await self._create_call(payload, resource_id)
                except CallError:
                    self._transition(resource_id, session, LifecycleState.FAILED)
                    raise
                record = await self._converge(resource_id, session, Operation.CREATE, cancel)
                assert record is not None
                return record

        raw = await self._create_call(payload, None)
        resource_id = self._handler.extract_id(raw) if raw is not None else ""
        if not resource_id:
            raise CallError(
                f"creating {self.resource_type}: empty identifier in response",
                operation=Operation.CREATE.value,
                last_state=LifecycleState.FAILED.value,
            )

        session = self._session(resource_id, LifecycleState.ABSENT)
        async with self._exclusive(resource_id, session):
            self._transition(resource_id, session, LifecycleState.CREATING)
            record = await self._converge(resource_id, session, Operation.CREATE, cancel)
            assert record is not None
            return record

    async def read(self, resource_id: str) -> ResourceRecord | None:
        """Read the current record.

        Returns:
            The record, or None if the resource no longer exists.

        Raises:
            TransientPollError, PollError: If the read failed.
        """
        try:
            record = await self._poller.read(resource_id)
        except NotFoundError:
            logger.warning(
                "Resource not found, removing from state",
                extra={"resource_id": resource_id, "resource_type": self.resource_type},
            )
            session = self._sessions.get(resource_id)
            if session is not None and not session.lock.locked():
                self._forget(resource_id)
            return None

        # A tombstoned identifier that reappeared starts a fresh session
        session = self._session(resource_id, LifecycleState.PRESENT)
        if not session.lock.locked():
            session.record = record
        return record

    async def refresh(self, record: ResourceRecord) -> RefreshResult:
        """Re-read a stored record and report out-of-band drift.

        Args:
            record: Record persisted by the caller.

        Returns:
            RefreshResult with the fresh record (None if gone) and the drift
            between the stored and the fresh observation.
        """
        fresh = await self.read(record.resource_id)
        if fresh is None:
            return RefreshResult(record=None)
        drift = self._drift.compare_records(record, fresh)
        if drift:
            logger.warning(
                "Out-of-band drift detected",
                extra={"resource_id": record.resource_id, "paths": drift.paths},
            )
        return RefreshResult(record=fresh, drift=drift)

    async def update(
        self,
        resource_id: str,
        spec: ResourceSpec,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ResourceRecord:
        """Update a resource if it drifted from the spec.

        An empty Diff makes this a no-op: the current record is returned and
        no mutating call is issued.

        Raises:
            SpecValidationError: If the spec does not satisfy the schema.
            NotFoundError: If the resource no longer exists.
            CallError: If the update call failed (not retried).
            WaitTimeoutError, TerminalStateError, CancellationError: If the
                wait failed.
        """
        self._validate(spec)
        current = await self._poller.read(resource_id)
        diff = self._drift.compare(current, spec)
        return await self._update(resource_id, spec, current, diff, cancel)

    async def delete(self, resource_id: str, *, cancel: asyncio.Event | None = None) -> None:
        """Delete a resource and wait until it is gone.

        A not-found answer to the delete call itself is success.

        Raises:
            CallError: If the delete call failed (not retried).
            WaitTimeoutError, TerminalStateError, CancellationError: If the
                wait failed.
        """
        if resource_id in self._deleted:
            logger.debug("Resource already deleted", extra={"resource_id": resource_id})
            return

        session = self._session(resource_id, LifecycleState.PRESENT)
        async with self._exclusive(resource_id, session):
            self._transition(resource_id, session, LifecycleState.DELETING)
            logger.info(
                "Deleting resource",
                extra={"resource_id": resource_id, "resource_type": self.resource_type},
            )

            try:
                await self._transport.delete(self.resource_type, resource_id)
            except NotFoundError:
                logger.info(
                    "Resource already absent",
                    extra={"resource_id": resource_id, "resource_type": self.resource_type},
                )
                self._transition(resource_id, session, LifecycleState.DELETED)
                self._forget(resource_id)
                return
            except Exception as e:
                self._transition(resource_id, session, LifecycleState.FAILED)
                raise CallError(
                    f"deleting {self.resource_type} ({resource_id}): {e}",
                    operation=Operation.DELETE.value,
                    resource_id=resource_id,
                    last_record=session.record,
                    last_error=e,
                ) from e

            await self._converge(resource_id, session, Operation.DELETE, cancel)

    async def apply(
        self,
        spec: ResourceSpec,
        record: ResourceRecord | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Drive a resource toward ``spec``.

        Args:
            spec: Desired configuration.
            record: Record persisted from a previous apply, if any.
            cancel: Event the caller sets to stop waiting.

        Returns:
            ApplyResult describing the action taken.
        """
        self._validate(spec)
        result = ApplyResult(resource_type=self.resource_type, action=ApplyAction.NO_OP)

        current: ResourceRecord | None = None
        if record is not None:
            current = await self.read(record.resource_id)

        if current is None:
            result.action = ApplyAction.CREATE
            result.record = await self.create(spec, cancel=cancel)
            result.end_time = datetime.now(UTC)
            self._log_result(result)
            return result

        diff = self._drift.compare(current, spec)
        result.diff = diff

        if not diff:
            result.record = current
        elif diff.touches(self._handler.schema.force_new_paths()):
            result.action = ApplyAction.REPLACE
            result.replaced_id = current.resource_id
            await self.delete(current.resource_id, cancel=cancel)
            result.record = await self.create(spec, cancel=cancel)
        else:
            result.action = ApplyAction.UPDATE
            result.record = await self._update(
                current.resource_id, spec, current, diff, cancel
            )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    async def _create_call(self, payload: dict[str, Any], resource_id: str | None) -> Any:
        """Issue the create call, wrapping any failure in CallError."""
        logger.info(
            "Creating resource",
            extra={"resource_type": self.resource_type, "resource_id": resource_id},
        )
        try:
            return await self._transport.create(self.resource_type, payload)
        except Exception as e:
            logger.error(
                "Create call failed",
                extra={
                    "resource_type": self.resource_type,
                    "resource_id": resource_id,
                    "error": str(e),
                },
            )
            raise CallError(
                f"creating {self.resource_type}: {e}",
                operation=Operation.CREATE.value,
                resource_id=resource_id,
                last_state=LifecycleState.FAILED.value,
                last_error=e,
            ) from e

    async def _update(
        self,
        resource_id: str,
        spec: ResourceSpec,
        current: ResourceRecord,
        diff: Diff,
        cancel: asyncio.Event | None,
    ) -> ResourceRecord:
        session = self._session(resource_id, LifecycleState.PRESENT)
        session.record = current

        if not diff:
            logger.debug("No drift, update skipped", extra={"resource_id": resource_id})
            if (
                session.state == LifecycleState.FAILED
                and not session.lock.locked()
                and current.state in self.wait_spec(Operation.UPDATE).target
            ):
                # Settled after the failure, nothing left to retry
                self._transition(resource_id, session, LifecycleState.PRESENT)
            return current

        async with self._exclusive(resource_id, session):
            self._transition(resource_id, session, LifecycleState.UPDATING)
            logger.info(
                "Updating resource",
                extra={
                    "resource_id": resource_id,
                    "resource_type": self.resource_type,
                    "paths": diff.paths,
                },
            )
            payload = self._handler.expand(spec, self._context)

            try:
                await self._transport.update(self.resource_type, resource_id, payload)
            except Exception as e:
                self._transition(resource_id, session, LifecycleState.FAILED)
                raise CallError(
                    f"updating {self.resource_type} ({resource_id}): {e}",
                    operation=Operation.UPDATE.value,
                    resource_id=resource_id,
                    last_record=current,
                    last_error=e,
                ) from e

            record = await self._converge(resource_id, session, Operation.UPDATE, cancel)
            assert record is not None
            return record

    async def _converge(
        self,
        resource_id: str,
        session: _Session,
        operation: Operation,
        cancel: asyncio.Event | None,
    ) -> ResourceRecord | None:
        """Wait for the operation to converge and settle the session state."""
        wait_spec = self.wait_spec(operation)
        try:
            record = await self._waiter.wait(resource_id, wait_spec, self._poller, cancel=cancel)
        except EngineError as e:
            self._transition(resource_id, session, LifecycleState.FAILED)
            logger.error(
                "Convergence failed",
                extra={
                    "resource_type": self.resource_type,
                    "operation": operation.value,
                    **e.context(),
                },
            )
            raise e.with_context(resource_id=resource_id, last_record=session.record)
        except (Exception, asyncio.CancelledError) as e:
            # Never leave the identifier stuck in a transitional state
            self._transition(resource_id, session, LifecycleState.FAILED)
            logger.error(
                "Convergence interrupted",
                extra={
                    "resource_id": resource_id,
                    "resource_type": self.resource_type,
                    "operation": operation.value,
                    "error": repr(e),
                },
            )
            raise

        if operation == Operation.DELETE:
            self._transition(resource_id, session, LifecycleState.DELETED)
            self._forget(resource_id)
            return None

        self._transition(resource_id, session, LifecycleState.PRESENT)
        session.record = record
        return record

    def _validate(self, spec: ResourceSpec) -> None:
        if spec.resource_type != self.resource_type:
            raise SpecValidationError(
                f"spec for {spec.resource_type} given to {self.resource_type} reconciler"
            )
        problems = self._handler.schema.validate_attributes(spec.attributes)
        if problems:
            raise SpecValidationError(
                f"invalid {self.resource_type} spec:\n  - " + "\n  - ".join(problems)
            )

    def _session(self, resource_id: str, initial: LifecycleState) -> _Session:
        session = self._sessions.get(resource_id)
        if session is None:
            self._deleted.pop(resource_id, None)
            session = _Session(state=initial)
            self._sessions[resource_id] = session
        return session

    def _forget(self, resource_id: str) -> None:
        """Drop the session of a deleted identifier, keeping a bounded tombstone."""
        self._sessions.pop(resource_id, None)
        self._deleted[resource_id] = None
        self._deleted.move_to_end(resource_id)
        while len(self._deleted) > MAX_DELETED_TOMBSTONES:
            self._deleted.popitem(last=False)

    @asynccontextmanager
    async def _exclusive(self, resource_id: str, session: _Session) -> AsyncIterator[None]:
        """Hold the identifier's writer lock, failing fast if it is taken."""
        if session.lock.locked():
            raise ConcurrentOperationError(
                f"an operation is already in flight for {self.resource_type} ({resource_id})",
                resource_id=resource_id,
                last_record=session.record,
            )
        async with session.lock:
            yield

    def _transition(
        self, resource_id: str, session: _Session, target: LifecycleState
    ) -> None:
        if not can_transition(session.state, target):
            raise InvalidTransitionError(
                f"{self.resource_type} ({resource_id}) cannot go from "
                f"{session.state.value} to {target.value}",
                resource_id=resource_id,
                last_record=session.record,
            )
        logger.debug(
            "Lifecycle transition",
            extra={
                "resource_id": resource_id,
                "from_state": session.state.value,
                "to_state": target.value,
            },
        )
        session.state = target

    def _log_result(self, result: ApplyResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "resource_type": result.resource_type,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "changed_paths": result.diff.paths,
        }
        if result.record is not None:
            extra["resource_id"] = result.record.resource_id
            extra["state"] = result.record.state
        if result.replaced_id is not None:
            extra["replaced_id"] = result.replaced_id
        logger.info("Apply result", extra=extra)
