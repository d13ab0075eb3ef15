"""State poller: one read against a remote resource, classified.

Each poll produces exactly one of three outcomes:
- found: a ResourceRecord with its state tag populated
- not_found: the resource is absent (expected during deletion, tolerated
  for a while right after creation)
- transient_error: the read failed in a way that may succeed on retry

Anything else, including a response the handler cannot map, is raised as
PollError. The poller never mutates remote state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

from .errors import EngineError, NotFoundError, PollError, TransientPollError
from .models import ResourceRecord

if TYPE_CHECKING:
    from .handlers import ResourceHandler
    from .transport import Transport

logger = logging.getLogger(__name__)

# HTTP status codes worth another read
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class PollKind(str, Enum):
    """Classification of a single poll."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    TRANSIENT_ERROR = "transient_error"


@dataclass(frozen=True)
class PollOutcome:
    """Result of one poll."""

    kind: PollKind
    record: ResourceRecord | None = None
    error: BaseException | None = None

    @classmethod
    def found(cls, record: ResourceRecord) -> PollOutcome:
        return cls(kind=PollKind.FOUND, record=record)

    @classmethod
    def not_found(cls) -> PollOutcome:
        return cls(kind=PollKind.NOT_FOUND)

    @classmethod
    def transient(cls, error: BaseException) -> PollOutcome:
        return cls(kind=PollKind.TRANSIENT_ERROR, error=error)


PollFn = Callable[[str], Awaitable[PollOutcome]]


def is_transient_error(error: BaseException) -> bool:
    """Decide whether a read error may succeed on retry.

    Args:
        error: Exception raised by the transport.

    Returns:
        True for throttling, timeouts, connection problems and 5xx responses.
    """
    if isinstance(error, TransientPollError):
        return True
    if isinstance(error, EngineError):
        return False
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return isinstance(error, ConnectionError | TimeoutError)


class StatePoller:
    """Reads one resource type through a transport and classifies the result."""

    def __init__(
        self,
        handler: ResourceHandler,
        transport: Transport,
        *,
        transient: Callable[[BaseException], bool] = is_transient_error,
    ) -> None:
        """Initialize poller.

        Args:
            handler: Handler for the resource type (flatten, state extraction).
            transport: Remote-call seam.
            transient: Predicate deciding which read errors are retryable.
        """
        self._handler = handler
        self._transport = transport
        self._transient = transient

    async def poll(self, resource_id: str) -> PollOutcome:
        """Issue one read and classify it.

        Args:
            resource_id: Opaque, non-empty identifier.

        Returns:
            PollOutcome of kind found, not_found or transient_error.

        Raises:
            ValueError: If resource_id is empty.
            PollError: If the read failed with a non-retryable error, or the
                handler could not map the response.
        """
        if not resource_id:
            raise ValueError("resource_id must not be empty")

        resource_type = self._handler.type_name
        try:
            raw = await self._transport.read(resource_type, resource_id)
        except NotFoundError:
            return PollOutcome.not_found()
        except Exception as e:
            if self._transient(e):
                logger.debug(
                    "Transient read error",
                    extra={
                        "resource_id": resource_id,
                        "resource_type": resource_type,
                        "error": str(e),
                    },
                )
                return PollOutcome.transient(e)
            raise PollError(
                f"reading {resource_type} ({resource_id}): {e}",
                resource_id=resource_id,
                last_error=e,
            ) from e

        # An empty describe result is treated as absence
        if raw is None:
            return PollOutcome.not_found()

        try:
            record = ResourceRecord(
                resource_id=resource_id,
                resource_type=resource_type,
                state=self._handler.extract_state(raw),
                attributes=self._handler.flatten(raw),
            )
        except Exception as e:
            logger.error(
                "Malformed read response",
                extra={
                    "resource_id": resource_id,
                    "resource_type": resource_type,
                    "error": repr(e),
                },
            )
            raise PollError(
                f"mapping {resource_type} ({resource_id}) response: {e!r}",
                resource_id=resource_id,
                last_error=e,
            ) from e
        return PollOutcome.found(record)

    async def __call__(self, resource_id: str) -> PollOutcome:
        return await self.poll(resource_id)

    async def read(self, resource_id: str) -> ResourceRecord:
        """Read the current record, raising instead of returning outcomes.

        Raises:
            NotFoundError: If the resource is absent.
            TransientPollError: If the read failed transiently.
            PollError: If the read failed permanently.
        """
        outcome = await self.poll(resource_id)
        match outcome.kind:
            case PollKind.FOUND:
                assert outcome.record is not None
                return outcome.record
            case PollKind.NOT_FOUND:
                raise NotFoundError(
                    f"{self._handler.type_name} ({resource_id}) not found",
                    resource_id=resource_id,
                )
            case _:
                raise TransientPollError(
                    f"reading {self._handler.type_name} ({resource_id}): {outcome.error}",
                    resource_id=resource_id,
                    last_error=outcome.error,
                ) from outcome.error
