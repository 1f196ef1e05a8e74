"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """
    Exception for validation errors.

    ``errors`` carries field-level detail as a list of
    ``{"field": ..., "message": ...}`` entries.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[list] = None,
        details: Optional[dict] = None
    ):
        self.errors = errors or []
        super().__init__(message, details)


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

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


class ConflictException(DomainException):
    """Exception when a request conflicts with the current resource state."""


class InvalidStateTransitionException(ConflictException):
    """Exception when an incident or rule transition is not allowed from its state."""

    def __init__(
        self,
        entity: str,
        action: str,
        current_state: str,
        details: Optional[dict] = None
    ):
        self.entity = entity
        self.action = action
        self.current_state = current_state
        super().__init__(
            f"Cannot {action} {entity} in state '{current_state}'",
            details or {"entity": entity, "action": action, "state": current_state}
        )


class ConcurrencyException(ConflictException):
    """Exception when an optimistic write lost a race with another writer."""


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class NotificationDeliveryException(ExternalServiceException):
    """Exception for a single failed notification delivery attempt."""

    def __init__(self, channel: str, message: str, details: Optional[dict] = None):
        self.channel = channel
        super().__init__(f"{channel} channel", message, details)
