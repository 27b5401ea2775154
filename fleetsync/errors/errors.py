"""
Custom exceptions for the real-time engine.

Exception hierarchy:
- RealtimeError (base)
  - ConnectionError: push channel could not be opened or was lost
  - MessageParseError: invalid/malformed channel frames
  - SubscriberError: a bus or state subscriber raised
  - QueueProcessingError: executing a queued update failed
  - BatchProcessorError: a batch processor raised
  - StateUpdateError: invalid input to a state update, no version bump
  - ConfigurationError: invalid configuration
- ComponentDestroyedError: operation on a destroyed component (also a RuntimeError)
"""

from __future__ import annotations

from typing import Any, Optional


class RealtimeError(Exception):
    """Base exception for all real-time engine errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class ConnectionError(RealtimeError):
    """Raised (or recorded) when the push channel fails or is lost. Always transient."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reconnect_attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempt = reconnect_attempt
        details = details or {}
        if url:
            details["url"] = url
        details["reconnect_attempt"] = reconnect_attempt
        super().__init__(message, component=component, details=details)


class MessageParseError(RealtimeError):
    """Raised when a channel frame cannot be decoded."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        # raw frame kept on the instance only
        super().__init__(message, component=component, details=details)


class SubscriberError(RealtimeError):
    """Wraps an exception raised by a subscriber callback."""

    def __init__(
        self,
        message: str,
        *,
        subscription_id: Optional[str] = None,
        topic: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.subscription_id = subscription_id
        self.topic = topic
        details = details or {}
        if subscription_id:
            details["subscription_id"] = subscription_id
        if topic:
            details["topic"] = topic
        super().__init__(message, component=component, details=details)


class QueueProcessingError(RealtimeError):
    """Raised when a single queued update fails to execute."""

    def __init__(
        self,
        message: str,
        *,
        update_id: Optional[str] = None,
        retry_count: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.update_id = update_id
        self.retry_count = retry_count
        details = details or {}
        if update_id:
            details["update_id"] = update_id
        details["retry_count"] = retry_count
        super().__init__(message, component=component, details=details)


class BatchProcessorError(RealtimeError):
    """Raised when a batch processor fails; the batch's updates go to retry."""

    def __init__(
        self,
        message: str,
        *,
        batch_key: Optional[str] = None,
        size: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.batch_key = batch_key
        self.size = size
        details = details or {}
        if batch_key:
            details["batch_key"] = batch_key
        details["size"] = size
        super().__init__(message, component=component, details=details)


class StateUpdateError(RealtimeError):
    """Raised when a state update receives invalid input."""

    def __init__(
        self,
        message: str,
        *,
        update_kind: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.update_kind = update_kind
        details = details or {}
        if update_kind:
            details["update_kind"] = update_kind
        super().__init__(message, component=component, details=details)


class ConfigurationError(RealtimeError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


class ComponentDestroyedError(RealtimeError, RuntimeError):
    """Raised synchronously when an operation is attempted on a destroyed component."""

    def __init__(self, component: str, operation: Optional[str] = None) -> None:
        message = f"{component} has been destroyed"
        if operation:
            message = f"cannot call {operation}(): {message}"
        super().__init__(message, component=component)
