"""Wait engine: poll a resource until it converges, fails, or runs out of time.

This module replaces the per-resource polling loops of a provider with a
single loop parameterized by a WaitSpec:

1. Poll at the configured interval, backing off up to a cap, with jitter
2. Count consecutive target observations (absorbs eventually-consistent reads)
3. Fail fast on known-failure states
4. Tolerate a bounded run of not-found / transient reads
5. Stop at the deadline or on caller cancellation, whichever comes first

ARCHITECTURE:
Sleeping between polls waits on the caller's cancellation event, so a
cancellation wakes the waiter immediately instead of after the interval.
The deadline is checked before every poll and bounds the poll in flight,
so no poll is issued once the deadline has passed.

The engine only observes. It never issues a mutating call.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import (
    CancellationError,
    PollError,
    TerminalStateError,
    TransientPollError,
    UnexpectedAbsenceError,
    WaitTimeoutError,
)
from .models import ResourceRecord, WaitSpec
from .poller import PollFn, PollKind, PollOutcome

logger = logging.getLogger(__name__)


@dataclass
class WaitProgress:
    """Mutable bookkeeping for one wait."""

    polls: int = 0
    consecutive_target: int = 0
    consecutive_misses: int = 0
    last_record: ResourceRecord | None = None
    last_state: str | None = None
    last_error: BaseException | None = None
    absent: bool = False


class Waiter:
    """Drives repeated polling until a WaitSpec is satisfied.

    A Waiter holds no per-wait state and can be shared across concurrent
    waits for different identifiers.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize waiter.

        Args:
            clock: Monotonic clock used for the deadline.
            rng: Random source for jitter.
        """
        self._clock = clock
        self._rng = rng or random.Random()

    async def wait(
        self,
        resource_id: str,
        spec: WaitSpec,
        poll: PollFn,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ResourceRecord | None:
        """Poll until the resource reaches a target state.

        Args:
            resource_id: Identifier to poll.
            spec: Convergence descriptor.
            poll: Poll function, usually a StatePoller.
            cancel: Event the caller sets to stop waiting.

        Returns:
            The converged record, or None for deletion waits satisfied by
            absence.

        Raises:
            TerminalStateError: A failure-set state was observed.
            UnexpectedAbsenceError: Absent past the not-found budget.
            TransientPollError: Transient read errors past the budget.
            PollError: A read failed permanently.
            WaitTimeoutError: The deadline passed first.
            CancellationError: The caller set the cancel event.
        """
        progress = WaitProgress()
        deadline = self._clock() + spec.timeout_seconds
        interval = spec.poll_interval_seconds

        logger.debug(
            "Waiting for state",
            extra={
                "resource_id": resource_id,
                "pending": sorted(spec.pending),
                "target": sorted(spec.target),
                "timeout_seconds": spec.timeout_seconds,
            },
        )

        if spec.delay_seconds > 0:
            await self._sleep(min(spec.delay_seconds, max(deadline - self._clock(), 0)), cancel)

        while True:
            self._check_cancelled(resource_id, progress, cancel)

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._timeout(resource_id, spec, progress)

            try:
                outcome = await asyncio.wait_for(poll(resource_id), timeout=remaining)
            except TimeoutError as e:
                raise self._timeout(resource_id, spec, progress) from e
            except PollError as e:
                raise e.with_context(resource_id=resource_id, last_record=progress.last_record)
            progress.polls += 1

            done = self._observe(resource_id, spec, outcome, progress)
            if done:
                logger.info(
                    "Resource converged",
                    extra={
                        "resource_id": resource_id,
                        "state": progress.last_state,
                        "absent": progress.absent,
                        "polls": progress.polls,
                    },
                )
                return None if progress.absent else progress.last_record

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._timeout(resource_id, spec, progress)

            delay = interval
            if spec.jitter > 0:
                delay += self._rng.uniform(0, interval * spec.jitter)
            await self._sleep(min(delay, remaining), cancel)

            interval *= spec.backoff_factor
            if spec.max_poll_interval_seconds is not None:
                interval = min(interval, spec.max_poll_interval_seconds)

    def _observe(
        self,
        resource_id: str,
        spec: WaitSpec,
        outcome: PollOutcome,
        progress: WaitProgress,
    ) -> bool:
        """Fold one poll outcome into the progress.

        Returns:
            True when the wait is satisfied.
        """
        match outcome.kind:
            case PollKind.FOUND:
                record = outcome.record
                assert record is not None
                progress.consecutive_misses = 0
                progress.absent = False
                progress.last_record = record
                progress.last_state = record.state

                if record.state in spec.target:
                    progress.consecutive_target += 1
                    return progress.consecutive_target >= spec.min_consecutive_target

                progress.consecutive_target = 0

                if record.state in spec.failure:
                    logger.error(
                        "Resource entered failure state",
                        extra={
                            "resource_id": resource_id,
                            "state": record.state,
                            "polls": progress.polls,
                        },
                    )
                    raise TerminalStateError(
                        f"{record.resource_type} ({resource_id}) reached failure state "
                        f"{record.state!r}",
                        resource_id=resource_id,
                        last_record=record,
                    )

                if record.state not in spec.pending:
                    logger.warning(
                        "Unexpected state, treating as pending",
                        extra={
                            "resource_id": resource_id,
                            "state": record.state,
                            "pending": sorted(spec.pending),
                            "target": sorted(spec.target),
                        },
                    )
                return False

            case PollKind.NOT_FOUND:
                progress.consecutive_misses += 1

                if spec.absent_is_target:
                    progress.consecutive_target += 1
                    progress.absent = True
                    progress.last_state = None
                    if progress.consecutive_target >= spec.min_consecutive_target:
                        return True
                    # Past the budget, absence is as good as converged
                    return progress.consecutive_misses > spec.max_not_found_checks

                progress.consecutive_target = 0
                if progress.consecutive_misses > spec.max_not_found_checks:
                    raise UnexpectedAbsenceError(
                        f"resource ({resource_id}) not found after "
                        f"{progress.consecutive_misses} consecutive checks",
                        resource_id=resource_id,
                        last_record=progress.last_record,
                    )
                logger.warning(
                    "Resource not found, tolerating",
                    extra={
                        "resource_id": resource_id,
                        "not_found_checks": progress.consecutive_misses,
                        "max_not_found_checks": spec.max_not_found_checks,
                    },
                )
                return False

            case PollKind.TRANSIENT_ERROR:
                progress.consecutive_misses += 1
                progress.consecutive_target = 0
                progress.last_error = outcome.error

                if progress.consecutive_misses > spec.max_not_found_checks:
                    raise TransientPollError(
                        f"reading ({resource_id}) kept failing after "
                        f"{progress.consecutive_misses} attempts: {outcome.error}",
                        resource_id=resource_id,
                        last_record=progress.last_record,
                        last_error=outcome.error,
                    ) from outcome.error
                logger.warning(
                    "Transient poll error, retrying",
                    extra={
                        "resource_id": resource_id,
                        "attempt": progress.consecutive_misses,
                        "error": str(outcome.error),
                    },
                )
                return False

        raise ValueError(f"Unknown poll outcome: {outcome.kind}")

    async def _sleep(self, seconds: float, cancel: asyncio.Event | None) -> None:
        """Sleep, waking early if the cancel event is set."""
        if seconds <= 0:
            return
        if cancel is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except TimeoutError:
            # Normal timeout, continue to next poll
            pass

    def _check_cancelled(
        self,
        resource_id: str,
        progress: WaitProgress,
        cancel: asyncio.Event | None,
    ) -> None:
        if cancel is not None and cancel.is_set():
            logger.info(
                "Wait cancelled",
                extra={"resource_id": resource_id, "polls": progress.polls},
            )
            raise CancellationError(
                f"waiting for ({resource_id}) cancelled after {progress.polls} polls",
                resource_id=resource_id,
                last_record=progress.last_record,
                last_state=progress.last_state,
                last_error=progress.last_error,
            )

    def _timeout(
        self,
        resource_id: str,
        spec: WaitSpec,
        progress: WaitProgress,
    ) -> WaitTimeoutError:
        logger.error(
            "Wait timed out",
            extra={
                "resource_id": resource_id,
                "timeout_seconds": spec.timeout_seconds,
                "last_state": progress.last_state,
                "polls": progress.polls,
            },
        )
        last_seen = progress.last_state or (
            f"error: {progress.last_error}" if progress.last_error else "nothing"
        )
        return WaitTimeoutError(
            f"timeout after {spec.timeout_seconds}s waiting for ({resource_id}) to reach "
            f"{sorted(spec.target) or 'absence'} (last observed: {last_seen})",
            resource_id=resource_id,
            last_record=progress.last_record,
            last_state=progress.last_state,
            last_error=progress.last_error,
            polls=progress.polls,
        )


async def await_state(
    resource_id: str,
    spec: WaitSpec,
    poll: PollFn,
    *,
    cancel: asyncio.Event | None = None,
) -> ResourceRecord | None:
    """Wait with a default Waiter. See Waiter.wait."""
    return await Waiter().wait(resource_id, spec, poll, cancel=cancel)
