"""Error taxonomy for the reconcile/wait engine.

Every error carries enough context for the caller to decide between
retrying the whole operation and abandoning it to clean up:

- resource_id: identifier of the instance, when one has been assigned
- last_record: last ResourceRecord observed before the failure
- last_state: last observed state tag
- last_error: last transport error seen while polling

The engine raises these errors; it never returns them as values and it
never swallows them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ResourceRecord


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        resource_id: str | None = None,
        last_record: ResourceRecord | None = None,
        last_state: str | None = None,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.resource_id = resource_id
        self.last_record = last_record
        self.last_state = last_state
        if last_state is None and last_record is not None:
            self.last_state = last_record.state
        self.last_error = last_error

    def with_context(
        self,
        *,
        resource_id: str | None = None,
        last_record: ResourceRecord | None = None,
    ) -> EngineError:
        """Fill in missing context without overwriting what is already known.

        Returns:
            The same error instance, for use in ``raise err.with_context(...)``.
        """
        if self.resource_id is None:
            self.resource_id = resource_id
        if self.last_record is None and last_record is not None:
            self.last_record = last_record
            if self.last_state is None:
                self.last_state = last_record.state
        return self

    def context(self) -> dict[str, Any]:
        """Structured context for logging."""
        return {
            "resource_id": self.resource_id,
            "last_state": self.last_state,
            "last_error": str(self.last_error) if self.last_error else None,
            "error_type": type(self).__name__,
        }


class SpecValidationError(EngineError):
    """Raised when a ResourceSpec does not satisfy its resource schema."""

    pass


class CallError(EngineError):
    """A mutating remote call (create/update/delete) failed.

    Never retried by the engine. Retrying the call is the transport's job.
    """

    def __init__(self, message: str, *, operation: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.operation = operation


class PollError(EngineError):
    """A read failed with an error that is not eligible for retry."""

    pass


class TransientPollError(PollError):
    """A read failed but may succeed on retry (network, throttling, 5xx)."""

    pass


class NotFoundError(EngineError):
    """The remote resource does not exist.

    Transports raise this to signal absence; the poller turns it into a
    not-found observation.
    """

    pass


class WaitTimeoutError(EngineError):
    """The deadline passed before the target state was reached."""

    def __init__(self, message: str, *, polls: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.polls = polls


class TerminalStateError(EngineError):
    """An observed state is in the known-failure set. Not retried."""

    pass


class UnexpectedAbsenceError(TerminalStateError):
    """The resource stayed absent past the not-found budget while presence was expected."""

    pass


class CancellationError(EngineError):
    """The caller cancelled the wait. Polling stopped at the next boundary."""

    pass


class InvalidTransitionError(EngineError):
    """A lifecycle transition not permitted by the state machine was requested."""

    pass


class ConcurrentOperationError(EngineError):
    """A mutating operation is already in flight for this identifier."""

    pass


class UnknownResourceTypeError(EngineError):
    """No handler is registered for the requested resource type."""

    pass
