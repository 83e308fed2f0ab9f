"""
Error taxonomy shared by the dispatcher, handlers and adapters.

Every failure a command can end in maps onto exactly one ErrorKind. Adapters
translate library exceptions (httpx, SQLAlchemy) into these classes so that
nothing above them ever sees a raw transport or driver error.
"""

from enum import Enum
from typing import Any, Dict, Optional

class ErrorKind(str, Enum):
    VALIDATION_ERROR = "ValidationError"
    PERMISSION_DENIED = "PermissionDenied"
    UPSTREAM_ERROR = "UpstreamError"
    STORE_UNAVAILABLE = "StoreUnavailable"
    UNKNOWN_COMMAND = "UnknownCommand"
    INTERNAL_ERROR = "InternalError"

class BotError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def details(self) -> Dict[str, Any]:
        return {}

class ValidationError(BotError):
    kind = ErrorKind.VALIDATION_ERROR

class InvalidFormat(ValidationError):
    pass

class OutOfRange(ValidationError):
    pass

class PermissionDenied(BotError):
    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, required, actual):
        super().__init__(
            f"Insufficient permissions. Required: {required.label}, your tier: {actual.label}"
        )
        self.required = required
        self.actual = actual

    @property
    def details(self) -> Dict[str, Any]:
        return {"required": self.required.label, "actual": self.actual.label}

class UpstreamError(BotError):
    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def details(self) -> Dict[str, Any]:
        return {"statusCode": self.status_code} if self.status_code is not None else {}

class StoreUnavailable(BotError):
    kind = ErrorKind.STORE_UNAVAILABLE

class UnknownCommand(BotError):
    kind = ErrorKind.UNKNOWN_COMMAND
