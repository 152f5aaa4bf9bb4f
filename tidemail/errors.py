"""Project-wide error types."""


class ProjectError(Exception):
    """Base for all Tidemail errors."""


class ValidationError(ProjectError):
    """Invalid input data."""


class ExternalServiceError(ProjectError):
    """Third-party API or service failure."""


class AuthorizationError(ExternalServiceError):
    """Bearer credential rejected even after a forced refresh."""


class RateLimitError(ExternalServiceError):
    """Remote API reported 429 inside a batch response."""


__all__ = [
    "ProjectError",
    "ValidationError",
    "ExternalServiceError",
    "AuthorizationError",
    "RateLimitError",
]
