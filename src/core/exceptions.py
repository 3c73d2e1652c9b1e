"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Every exception carries an HTTP ``status_code`` so the API layer can map
domain failures to responses without knowing each type. Background jobs
catch them per ticket and log them instead.
"""

from typing import Optional, Any


class ApplicationException(Exception):
    """Base exception for all application errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for API error bodies."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""

    status_code = 422


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""

    status_code = 422


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    status_code = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    status_code = 502

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class NotificationDeliveryError(ExternalServiceException):
    """A notification could not be handed to the delivery channel."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Dispatch", message, details)


# ========== SLA Engine ==========

class NoMatchingRuleError(DomainException):
    """No active SLA rule applies to the ticket."""

    def __init__(self, ticket_id: str, details: Optional[dict] = None):
        self.ticket_id = ticket_id
        super().__init__(
            f"No SLA rule matches ticket {ticket_id}",
            details or {"ticket_id": ticket_id}
        )


class AlreadyTrackedError(DomainException):
    """A tracking record already exists for the ticket."""

    status_code = 409

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(
            f"Ticket {ticket_id} already has SLA tracking",
            {"ticket_id": ticket_id}
        )


class ScheduleUnreachable(DomainException):
    """A business-hours schedule never yields enough working time."""

    def __init__(self, schedule_id: Optional[str], message: str, details: Optional[dict] = None):
        self.schedule_id = schedule_id
        super().__init__(message, details or {"schedule_id": schedule_id})


class TrackingStateError(DomainException):
    """Base class for pause/resume state-machine misuse."""

    def __init__(self, ticket_id: str, message: str, details: Optional[dict] = None):
        self.ticket_id = ticket_id
        super().__init__(message, details or {"ticket_id": ticket_id})


class AlreadyPausedError(TrackingStateError):
    status_code = 409

    def __init__(self, ticket_id: str):
        super().__init__(ticket_id, f"SLA timer for ticket {ticket_id} is already paused")


class NotPausedError(TrackingStateError):
    status_code = 409

    def __init__(self, ticket_id: str):
        super().__init__(ticket_id, f"SLA timer for ticket {ticket_id} is not paused")


class PauseNotAllowedError(TrackingStateError):
    def __init__(self, ticket_id: str, reason: str):
        self.reason = reason
        super().__init__(
            ticket_id,
            f"Pause not allowed for ticket {ticket_id}: {reason}",
            {"ticket_id": ticket_id, "reason": reason}
        )


class TrackingNotFoundError(ResourceNotFoundException):
    """The ticket has no tracking record."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__("SLA tracking", ticket_id, {"ticket_id": ticket_id})


class PersistenceError(RepositoryException):
    """Storage layer failure."""

    status_code = 503


class ConcurrentModificationError(RepositoryException):
    """Optimistic version check failed; the caller may retry."""

    status_code = 409
    retryable = True

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity} {entity_id} was modified concurrently (expected version {expected_version})",
            {"entity": entity, "id": entity_id, "expected_version": expected_version, "retryable": True}
        )
