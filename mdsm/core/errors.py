from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from mdsm.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class MdsmError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Client-input errors (expected, never fatal) ----
class DecryptionError(MdsmError):
    def __init__(self, user_message: str = "Cookie could not be decrypted.", **ctx: Any):
        super().__init__("decryption_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class UnknownClientError(MdsmError):
    def __init__(self, user_message: str = "Client not found in session.", **ctx: Any):
        super().__init__("unknown_client", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class UnknownEndpointError(MdsmError):
    def __init__(self, user_message: str = "Invalid endpoint.", **ctx: Any):
        super().__init__("unknown_endpoint", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class AuthorizationError(MdsmError):
    def __init__(self, user_message: str = "Client class not allowed for this endpoint.", **ctx: Any):
        super().__init__("not_authorized", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class SessionNotFoundError(MdsmError):
    def __init__(self, user_message: str = "Session not found.", **ctx: Any):
        super().__init__("session_not_found", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Programming / configuration errors (fail fast) ----
class ConfigError(MdsmError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class DuplicateEndpointError(MdsmError):
    def __init__(self, user_message: str = "Duplicate endpoint URL.", **ctx: Any):
        super().__init__("duplicate_endpoint", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class DuplicateSessionError(MdsmError):
    def __init__(self, user_message: str = "Session ID already in use.", **ctx: Any):
        super().__init__("duplicate_session", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class ValidationError(MdsmError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)
