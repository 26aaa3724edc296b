# lensroom/errors.py

from typing import Any, Optional


class InferError(Exception):
    """
    Base class for every failure the inference endpoint renders to the caller.

    status_code is the HTTP status the error maps to; str(err) is the
    human-readable message placed in the response "error" field.
    """

    status_code = 500

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(InferError):
    status_code = 400


class AuthError(InferError):
    status_code = 401


class InsufficientCreditsError(InferError):
    status_code = 402

    def __init__(self, balance: int, required: int):
        super().__init__(f"Insufficient credits. You have {balance}, need {required}.")
        self.balance = balance
        self.required = required


class ModelNotFoundError(InferError):
    status_code = 404

    def __init__(self, model_id: str):
        super().__init__(f"Model not found or disabled: {model_id}")
        self.model_id = model_id


class AlreadyRefundedError(InferError):
    status_code = 409


class ProviderInternalError(InferError):
    status_code = 500


class ProviderError(InferError):
    """The provider accepted the task but reported the generation itself as failed."""

    status_code = 502


class CollaboratorUnavailableError(InferError):
    status_code = 503

    REASONS = ("missing_config", "network_error", "auth_error", "other")

    def __init__(self, operation: str, reason: str, message: str):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown unavailability reason: {reason}")
        super().__init__(f"Service unavailable during {operation} ({reason}): {message}")
        self.operation = operation
        self.reason = reason


class ConfigurationError(InferError):
    status_code = 503


class ProviderTimeoutError(InferError):
    status_code = 504


class RequestTimeoutError(InferError):
    status_code = 504


class MissingConfigError(Exception):
    """Raised by a collaborator whose environment configuration is absent."""


class GenerationStateError(RuntimeError):
    """Illegal Generation Record transition (e.g. success after failed)."""
