"""Core utilities and shared components for rolloutctl."""

# Note: Import context lazily to avoid circular imports
# Use: from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import RolloutError, ConfigError, PlanValidationError, TargetNotFoundError
from rolloutctl.core.output import OutputFormatter

__all__ = [
    "RolloutError",
    "ConfigError",
    "PlanValidationError",
    "TargetNotFoundError",
    "OutputFormatter",
]
