"""Custom exceptions for rolloutctl."""

from typing import Any


class RolloutError(Exception):
    """Base exception for all rolloutctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(RolloutError):
    """Configuration-related errors."""

    pass


class ValidationError(RolloutError):
    """Input validation errors."""

    pass


class PlanValidationError(ValidationError):
    """A deployment plan failed validation.

    Carries every individual problem so the CLI can list them all at once.
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.errors = errors or []

    def __str__(self) -> str:
        if self.errors:
            return f"{self.message}: " + "; ".join(self.errors)
        return super().__str__()


class RegistryError(RolloutError):
    """Target registry storage errors."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id


class TargetNotFoundError(RegistryError):
    """Requested target is not registered."""

    pass


class PlanNotFoundError(RolloutError):
    """Requested plan has no stored state."""

    def __init__(
        self,
        message: str,
        plan_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.plan_id = plan_id


class ArtifactError(RolloutError):
    """Artifact store errors outside of normal resolution outcomes."""

    def __init__(
        self,
        message: str,
        version: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.version = version


class SecretError(RolloutError):
    """Secret lease errors."""

    pass


class ReconcileError(RolloutError):
    """Reconciler misuse, such as an inconsistent target record."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
