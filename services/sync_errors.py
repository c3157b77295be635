"""
Sync Error Taxonomy
Structured errors raised by mutation stores, the request client and the change channel.

Every error carries a machine-readable category so the UI layer can decide how
to report it without string matching.
"""

import logging
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    NETWORK = "network"
    CONFLICT = "conflict"
    CHANNEL = "channel"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """Base exception for sync client errors."""
    category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        recoverable: bool = True,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'category': self.category.value,
            'recoverable': self.recoverable,
            'context': self.context,
            'timestamp': self.timestamp.isoformat()
        }


class ValidationError(SyncError):
    """Mutation rejected by client-side or server-side validation."""
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field_errors: Optional[Dict[str, List[str]]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, recoverable=False, context=context)
        self.field_errors = field_errors or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['field_errors'] = self.field_errors
        return data


class NetworkError(SyncError):
    """Transient transport failure. Retrying is the caller's decision."""
    category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, recoverable=True, context=context)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['status_code'] = self.status_code
        return data


class ConflictError(SyncError):
    """
    Server rejected a mutation because it was based on a stale revision.

    `current` holds the canonical record re-fetched after the conflict, when
    the re-fetch succeeded.
    """
    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        current: Any = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, recoverable=True, context=context)
        self.current = current


class ChannelError(SyncError):
    """Push channel could not be (re)established."""
    category = ErrorCategory.CHANNEL


class NotFoundError(SyncError):
    """Entity unknown locally or on the server."""
    category = ErrorCategory.NOT_FOUND

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, recoverable=False, context=context)


def error_from_response(status_code: int, payload: Optional[Dict[str, Any]] = None) -> SyncError:
    """
    Map a failed response to the matching SyncError.

    Args:
        status_code: HTTP status of the failed response
        payload: Decoded JSON body, typically {"error": str, "kind": str, "details": {...}}

    Returns:
        SyncError subclass instance
    """
    payload = payload if isinstance(payload, dict) else {}
    message = payload.get('error') or payload.get('message') or f"Request failed with status {status_code}"
    kind = payload.get('kind')
    context = {'status_code': status_code}

    if kind == ErrorCategory.VALIDATION.value or status_code in (400, 422):
        return ValidationError(message, field_errors=_normalize_field_errors(payload.get('details')), context=context)
    if kind == ErrorCategory.CONFLICT.value or status_code in (409, 412):
        return ConflictError(message, context=context)
    if kind == ErrorCategory.NOT_FOUND.value or status_code == 404:
        return NotFoundError(message, context=context)
    return NetworkError(message, status_code=status_code, context=context)


def _normalize_field_errors(details: Any) -> Dict[str, List[str]]:
    """Accept {"field": "msg"}, {"field": ["msg"]} or [{"field": .., "message": ..}]."""
    field_errors: Dict[str, List[str]] = {}
    if isinstance(details, dict):
        for field_name, messages in details.items():
            if isinstance(messages, (list, tuple)):
                field_errors[str(field_name)] = [str(m) for m in messages]
            else:
                field_errors[str(field_name)] = [str(messages)]
    elif isinstance(details, list):
        for item in details:
            if isinstance(item, dict) and item.get('field'):
                field_errors.setdefault(str(item['field']), []).append(str(item.get('message', 'invalid')))
    elif details:
        logger.debug(f"Ignoring unstructured error details: {details!r}")
    return field_errors
