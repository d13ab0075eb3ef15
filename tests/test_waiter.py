"""Tests for the wait engine.

Covers convergence counting, flake tolerance, deadline handling and
cancellation, both through a StatePoller over the fake cloud and through
a bare scripted poll function.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from typing import Any

import pytest
from fake_cloud import CHANNEL_TYPE, NOT_FOUND, ChannelHandler, FakeTransport

from convergence.errors import (
    CancellationError,
    PollError,
    TerminalStateError,
    TransientPollError,
    UnexpectedAbsenceError,
    WaitTimeoutError,
)
from convergence.models import ResourceRecord, WaitSpec
from convergence.poller import PollOutcome, StatePoller
from convergence.waiter import Waiter, await_state


class ScriptedPoll:
    """Poll function replaying a fixed sequence; the last step repeats."""

    def __init__(self, *steps: Any) -> None:
        self._steps = deque(steps)
        self.calls: list[float] = []

    async def __call__(self, resource_id: str) -> PollOutcome:
        self.calls.append(time.monotonic())
        step = self._steps.popleft() if len(self._steps) > 1 else self._steps[0]
        if step is NOT_FOUND:
            return PollOutcome.not_found()
        if isinstance(step, PollError):
            raise step
        if isinstance(step, BaseException):
            return PollOutcome.transient(step)
        return PollOutcome.found(
            ResourceRecord(resource_id=resource_id, resource_type=CHANNEL_TYPE, state=step)
        )


class StepClock:
    """Clock that advances one unit per poll."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingWaiter(Waiter):
    """Waiter that records sleeps instead of sleeping."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.sleeps: list[float] = []

    async def _sleep(self, seconds: float, cancel: asyncio.Event | None) -> None:
        self.sleeps.append(seconds)


def create_spec(**overrides: Any) -> WaitSpec:
    values: dict[str, Any] = {
        "pending": {"CREATING"},
        "target": {"IDLE"},
        "failure": {"CREATE_FAILED"},
        "timeout_seconds": 5,
        "poll_interval_seconds": 0.01,
    }
    values.update(overrides)
    return WaitSpec(**values)


def delete_spec(**overrides: Any) -> WaitSpec:
    values: dict[str, Any] = {
        "pending": {"DELETING"},
        "target": {"DELETED"},
        "timeout_seconds": 5,
        "poll_interval_seconds": 0.01,
        "absent_is_target": True,
    }
    values.update(overrides)
    return WaitSpec(**values)


class TestConvergence:
    """Tests for consecutive target counting."""

    @pytest.mark.asyncio
    async def test_create_scenario_converges_after_exactly_four_polls(self) -> None:
        """[CREATING, CREATING, IDLE, IDLE] with two required observations."""
        transport = FakeTransport()
        transport.script("ch-1", "CREATING", "CREATING", "IDLE", "IDLE", "CREATE_FAILED")
        poller = StatePoller(ChannelHandler(), transport)

        record = await Waiter().wait("ch-1", create_spec(min_consecutive_target=2), poller)

        assert record is not None
        assert record.state == "IDLE"
        assert record.resource_id == "ch-1"
        assert transport.reads == 4

    @pytest.mark.asyncio
    async def test_single_observation_is_enough_by_default(self) -> None:
        poll = ScriptedPoll("CREATING", "IDLE")

        record = await Waiter().wait("ch-1", create_spec(), poll)

        assert record is not None
        assert record.state == "IDLE"
        assert len(poll.calls) == 2

    @pytest.mark.asyncio
    async def test_flicker_resets_counter(self) -> None:
        """A non-target observation in between restarts the count."""
        poll = ScriptedPoll("IDLE", "CREATING", "IDLE", "IDLE")

        record = await Waiter().wait("ch-1", create_spec(min_consecutive_target=2), poll)

        assert record is not None
        assert len(poll.calls) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("k", "steps"),
        [
            (2, ["IDLE", "CREATING", "IDLE", "CREATE_FAILED"]),
            (3, ["IDLE", "IDLE", "CREATING", "IDLE", "IDLE", "CREATE_FAILED"]),
            (2, ["IDLE", NOT_FOUND, "IDLE", "CREATE_FAILED"]),
            (2, ["IDLE", ConnectionError("reset"), "IDLE", "CREATE_FAILED"]),
        ],
    )
    async def test_fewer_than_k_observations_never_succeed(
        self, k: int, steps: list[Any]
    ) -> None:
        poll = ScriptedPoll(*steps)

        with pytest.raises(TerminalStateError):
            await Waiter().wait("ch-1", create_spec(min_consecutive_target=k), poll)

        assert len(poll.calls) == len(steps)

    @pytest.mark.asyncio
    async def test_random_short_runs_never_succeed(self) -> None:
        """Runs shorter than k separated by pending states always fail."""
        rng = random.Random(1234)
        for _ in range(25):
            k = rng.randint(2, 4)
            steps: list[Any] = []
            for _ in range(rng.randint(1, 6)):
                steps.extend(["IDLE"] * rng.randint(0, k - 1))
                steps.append(rng.choice(["CREATING", NOT_FOUND]))
            steps.append("CREATE_FAILED")
            poll = ScriptedPoll(*steps)

            with pytest.raises(TerminalStateError):
                await Waiter().wait(
                    "ch-1",
                    create_spec(
                        min_consecutive_target=k,
                        poll_interval_seconds=0.001,
                        max_not_found_checks=len(steps),
                    ),
                    poll,
                )

    @pytest.mark.asyncio
    async def test_unknown_state_treated_as_pending(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.WARNING, logger="convergence.waiter")
        poll = ScriptedPoll("RECOVERING", "IDLE")

        record = await Waiter().wait("ch-1", create_spec(), poll)

        assert record is not None
        assert "Unexpected state" in caplog.text

    @pytest.mark.asyncio
    async def test_await_state_uses_default_waiter(self) -> None:
        record = await await_state("ch-1", create_spec(), ScriptedPoll("IDLE"))

        assert record is not None
        assert record.state == "IDLE"


class TestFailureStates:
    """Tests for terminal failure observations."""

    @pytest.mark.asyncio
    async def test_failure_state_returns_immediately(self) -> None:
        transport = FakeTransport()
        transport.script("ch-1", "CREATING", "CREATE_FAILED", "IDLE")
        poller = StatePoller(ChannelHandler(), transport)

        with pytest.raises(TerminalStateError) as exc_info:
            await Waiter().wait("ch-1", create_spec(), poller)

        assert exc_info.value.resource_id == "ch-1"
        assert exc_info.value.last_state == "CREATE_FAILED"
        assert exc_info.value.last_record is not None
        assert transport.reads == 2

    @pytest.mark.asyncio
    async def test_permanent_poll_error_propagates_with_context(self) -> None:
        poll = ScriptedPoll("CREATING", PollError("access denied"))

        with pytest.raises(PollError) as exc_info:
            await Waiter().wait("ch-1", create_spec(), poll)

        assert exc_info.value.resource_id == "ch-1"
        assert exc_info.value.last_state == "CREATING"


class TestNotFoundTolerance:
    """Tests for the not-found and transient error budget."""

    @pytest.mark.asyncio
    async def test_delete_converges_on_absence(self) -> None:
        """[DELETING, DELETING, NotFound, NotFound] is a successful delete."""
        transport = FakeTransport()
        transport.script("ch-1", "DELETING", "DELETING", NOT_FOUND, NOT_FOUND)
        poller = StatePoller(ChannelHandler(), transport)

        result = await Waiter().wait(
            "ch-1",
            delete_spec(min_consecutive_target=2, max_not_found_checks=2),
            poller,
        )

        assert result is None
        assert transport.reads == 4

    @pytest.mark.asyncio
    async def test_delete_converges_on_first_absence_by_default(self) -> None:
        poll = ScriptedPoll("DELETING", "DELETING", NOT_FOUND)

        result = await Waiter().wait("ch-1", delete_spec(max_not_found_checks=2), poll)

        assert result is None
        assert len(poll.calls) == 3

    @pytest.mark.asyncio
    async def test_delete_absence_past_budget_is_success(self) -> None:
        poll = ScriptedPoll(NOT_FOUND)

        result = await Waiter().wait(
            "ch-1",
            delete_spec(min_consecutive_target=5, max_not_found_checks=1),
            poll,
        )

        assert result is None
        assert len(poll.calls) == 2

    @pytest.mark.asyncio
    async def test_observed_deleted_state_also_converges(self) -> None:
        poll = ScriptedPoll("DELETING", "DELETED")

        result = await Waiter().wait("ch-1", delete_spec(), poll)

        assert result is not None
        assert result.state == "DELETED"

    @pytest.mark.asyncio
    async def test_not_found_after_create_is_tolerated(self) -> None:
        poll = ScriptedPoll(NOT_FOUND, NOT_FOUND, "CREATING", "IDLE")

        record = await Waiter().wait("ch-1", create_spec(max_not_found_checks=2), poll)

        assert record is not None
        assert record.state == "IDLE"

    @pytest.mark.asyncio
    async def test_absence_past_budget_is_terminal_for_presence(self) -> None:
        poll = ScriptedPoll(NOT_FOUND)

        with pytest.raises(UnexpectedAbsenceError) as exc_info:
            await Waiter().wait("ch-1", create_spec(max_not_found_checks=2), poll)

        assert isinstance(exc_info.value, TerminalStateError)
        assert len(poll.calls) == 3

    @pytest.mark.asyncio
    async def test_transient_errors_past_budget_raise(self) -> None:
        error = ConnectionError("connection reset")
        poll = ScriptedPoll(error)

        with pytest.raises(TransientPollError) as exc_info:
            await Waiter().wait("ch-1", create_spec(max_not_found_checks=2), poll)

        assert exc_info.value.last_error is error
        assert len(poll.calls) == 3

    @pytest.mark.asyncio
    async def test_transient_errors_share_not_found_budget(self) -> None:
        poll = ScriptedPoll(NOT_FOUND, ConnectionError("reset"), NOT_FOUND)

        with pytest.raises(UnexpectedAbsenceError):
            await Waiter().wait("ch-1", create_spec(max_not_found_checks=2), poll)

    @pytest.mark.asyncio
    async def test_found_resets_miss_budget(self) -> None:
        poll = ScriptedPoll(NOT_FOUND, NOT_FOUND, "CREATING", NOT_FOUND, NOT_FOUND, "IDLE")

        record = await Waiter().wait("ch-1", create_spec(max_not_found_checks=2), poll)

        assert record is not None


class TestDeadline:
    """Tests for timeouts."""

    @pytest.mark.asyncio
    async def test_no_poll_after_deadline(self) -> None:
        """Polls land at t=0,1,2,3 against a 3.5 deadline, then the wait times out."""
        clock = StepClock()
        poll = ScriptedPoll("CREATING")

        async def ticking_poll(resource_id: str) -> PollOutcome:
            outcome = await poll(resource_id)
            clock.now += 1
            return outcome

        with pytest.raises(WaitTimeoutError) as exc_info:
            await Waiter(clock=clock).wait(
                "ch-1",
                create_spec(timeout_seconds=3.5, poll_interval_seconds=0.001),
                ticking_poll,
            )

        assert len(poll.calls) == 4
        assert exc_info.value.polls == 4
        assert exc_info.value.last_state == "CREATING"
        assert exc_info.value.resource_id == "ch-1"

    @pytest.mark.asyncio
    async def test_timeout_in_real_time(self) -> None:
        poll = ScriptedPoll("CREATING")
        timeout = 0.2
        start = time.monotonic()

        with pytest.raises(WaitTimeoutError) as exc_info:
            await Waiter().wait(
                "ch-1",
                create_spec(timeout_seconds=timeout, poll_interval_seconds=0.02),
                poll,
            )

        assert all(t - start < timeout + 0.05 for t in poll.calls)
        assert "CREATING" in str(exc_info.value)
        polls = len(poll.calls)
        await asyncio.sleep(0.05)
        assert len(poll.calls) == polls

    @pytest.mark.asyncio
    async def test_timeout_reports_last_error_when_nothing_observed(self) -> None:
        clock = StepClock()
        error = ConnectionError("unreachable")
        poll = ScriptedPoll(error)

        async def ticking_poll(resource_id: str) -> PollOutcome:
            outcome = await poll(resource_id)
            clock.now += 1
            return outcome

        with pytest.raises(WaitTimeoutError) as exc_info:
            await Waiter(clock=clock).wait(
                "ch-1",
                create_spec(timeout_seconds=1.5, poll_interval_seconds=0.001),
                ticking_poll,
            )

        assert exc_info.value.last_error is error
        assert "unreachable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_slow_poll_bounded_by_deadline(self) -> None:
        async def hanging_poll(resource_id: str) -> PollOutcome:
            await asyncio.sleep(10)
            raise AssertionError("unreachable")

        start = time.monotonic()
        with pytest.raises(WaitTimeoutError):
            await Waiter().wait("ch-1", create_spec(timeout_seconds=0.1), hanging_poll)

        assert time.monotonic() - start < 1.0


class TestCancellation:
    """Tests for caller cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self) -> None:
        poll = ScriptedPoll("CREATING")
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        start = time.monotonic()

        with pytest.raises(CancellationError) as exc_info:
            await Waiter().wait(
                "ch-1",
                create_spec(timeout_seconds=30, poll_interval_seconds=5),
                poll,
                cancel=cancel,
            )

        assert time.monotonic() - start < 1.0
        assert len(poll.calls) == 1
        assert exc_info.value.last_state == "CREATING"
        assert exc_info.value.resource_id == "ch-1"

    @pytest.mark.asyncio
    async def test_cancel_before_start_issues_no_poll(self) -> None:
        poll = ScriptedPoll("IDLE")
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(CancellationError):
            await Waiter().wait("ch-1", create_spec(), poll, cancel=cancel)

        assert poll.calls == []

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self) -> None:
        poll = ScriptedPoll("CREATING")
        task = asyncio.create_task(
            Waiter().wait("ch-1", create_spec(timeout_seconds=30, poll_interval_seconds=5), poll)
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestCadence:
    """Tests for poll interval, backoff and jitter."""

    @pytest.mark.asyncio
    async def test_backoff_grows_to_cap(self) -> None:
        waiter = RecordingWaiter()
        poll = ScriptedPoll("CREATING", "CREATING", "CREATING", "CREATING", "IDLE")

        await waiter.wait(
            "ch-1",
            create_spec(
                timeout_seconds=100,
                poll_interval_seconds=1,
                backoff_factor=2,
                max_poll_interval_seconds=4,
            ),
            poll,
        )

        assert waiter.sleeps == [1, 2, 4, 4]

    @pytest.mark.asyncio
    async def test_jitter_adds_bounded_delay(self) -> None:
        waiter = RecordingWaiter(rng=random.Random(7))
        poll = ScriptedPoll("CREATING", "CREATING", "CREATING", "IDLE")

        await waiter.wait(
            "ch-1",
            create_spec(timeout_seconds=100, poll_interval_seconds=1, jitter=0.5),
            poll,
        )

        assert len(waiter.sleeps) == 3
        assert all(1 <= s <= 1.5 for s in waiter.sleeps)

    @pytest.mark.asyncio
    async def test_initial_delay_before_first_poll(self) -> None:
        waiter = RecordingWaiter()
        poll = ScriptedPoll("IDLE")

        await waiter.wait(
            "ch-1",
            create_spec(timeout_seconds=100, delay_seconds=3),
            poll,
        )

        assert waiter.sleeps == [3]
