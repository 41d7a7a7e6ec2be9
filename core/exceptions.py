"""
Pipeline exceptions.

Transient errors propagate out of the job handler so the scheduler retries
them. Anything else (permanent errors, SDK auth or request errors, bugs) is
recorded on the message and the job completes without a retry.
"""
from __future__ import annotations

import asyncio

import httpx
from sqlalchemy.exc import OperationalError


class PipelineError(Exception):
    """Base class for pipeline errors."""


class TransientProcessingError(PipelineError):
    """A collaborator was unreachable or timed out; safe to retry."""


class ConcurrentUpdateError(TransientProcessingError):
    """The message record changed underneath an optimistic update."""


class PermanentProcessingError(PipelineError):
    """Retrying cannot help (configuration, missing data)."""


class MessageNotFoundError(PermanentProcessingError):
    def __init__(self, message_id: str):
        super().__init__(f"message '{message_id}' not found")
        self.message_id = message_id


class DeliveryNotConfiguredError(PermanentProcessingError):
    def __init__(self, tenant_id: str):
        super().__init__(f"no delivery channel configured for tenant '{tenant_id}'")
        self.tenant_id = tenant_id


class InvalidTransitionError(PipelineError):
    def __init__(self, machine: str, from_state: str, to_state: str):
        super().__init__(f"{machine}: transition '{from_state}' → '{to_state}' is not declared")
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state


class InvalidReviewOperationError(PipelineError):
    """A review operation was attempted from a status that does not allow it."""


class ReviewItemNotFoundError(PipelineError):
    def __init__(self, item_id: str):
        super().__init__(f"review item '{item_id}' not found")
        self.item_id = item_id


TRANSIENT_ERRORS = (
    TransientProcessingError,
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    OperationalError,           # database connection lost or locked
)


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TRANSIENT_ERRORS)
