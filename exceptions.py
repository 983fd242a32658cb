"""Activation key errors.

Tamper and expiry are not errors: they are ``Verdict`` values returned by the
state machine. Everything here is a failure of an operation the caller asked for.
"""
from datetime import datetime
from typing import Optional


class ActivationError(Exception):
    """Base exception for issuer, engine and store failures."""

    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(ActivationError):
    """Bad input, e.g. a non-positive duration or a blank code."""


class NotFoundError(ActivationError):
    """No record exists for the activation code."""


class ConflictError(ActivationError):
    """Another device completed activation first. Never retried automatically."""


class AlreadyUsedError(ActivationError):
    """The code is already bound. Carries the existing binding."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        device_id: Optional[str] = None,
        activated_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ):
        super().__init__(message, code)
        self.device_id = device_id
        self.activated_at = activated_at
        self.expires_at = expires_at

    def bound_to(self, device_id: str) -> bool:
        return self.device_id is not None and self.device_id == device_id


class StoreUnavailableError(ActivationError):
    """The shared key store could not be reached. Safe to retry with backoff."""

    retryable = True
