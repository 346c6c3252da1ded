"""Errors raised by the funnel pipeline.

Each error carries the HTTP status the API boundary answers with.
"""
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from funnel_studio.services.funnel.dispatcher import DispatchFailure


class FunnelError(Exception):
    """Base class for funnel pipeline failures."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FunnelError):
    """Missing or malformed request fields; raised before any mutation."""
    status_code = 400


class StepTransitionError(ValidationError):
    """A step was asked to move to a state its lifecycle does not allow."""


class NotFoundError(FunnelError):
    """Referenced funnel, step or image does not exist."""
    status_code = 404


class ConcurrencyError(FunnelError):
    """The funnel changed underneath an advance; the caller lost the race."""
    status_code = 409


class DispatchError(FunnelError):
    """At least one generation request of a batch failed.

    Jobs and images already created for the batch are kept.
    """
    status_code = 500

    def __init__(self, message: str, failures: Optional[List["DispatchFailure"]] = None):
        super().__init__(message)
        self.failures = failures or []


class PersistenceError(FunnelError):
    """Storage read or write failure."""
    status_code = 500
