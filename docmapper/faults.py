"""
docmapper Faults - Core types and fault taxonomy.

Defines:
- Fault base class (structured fault objects)
- FaultDomain (explicit fault domains)
- Severity levels
- The document-mapping fault families raised by the persistence core
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

__all__ = [
    "Severity",
    "FaultDomain",
    "Fault",
    "DocumentFault",
    "ValidationError",
    "ConstraintError",
    "PersistenceError",
    "ProgrammingError",
    "DocumentNotFoundError",
    "CascadeCancelledError",
    "DatabaseConnectionError",
    "ConfigError",
]


# ============================================================================
# Severity & Domain Enums
# ============================================================================

class Severity(str, Enum):
    """
    Fault severity levels.

    Determines logging level and whether a caller should retry.
    """
    INFO = "info"       # Informational, no action needed
    WARN = "warn"       # Warning, should be reviewed
    ERROR = "error"     # Error, immediate attention
    FATAL = "fatal"     # Fatal, unrecoverable, abort


class FaultDomain:
    """
    Fault domains (taxonomy).

    Identifies the functional area where a fault occurred.
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


# Standard Domains
FaultDomain.CONFIG = FaultDomain("config", "Configuration errors")
FaultDomain.MODEL = FaultDomain("model", "Model definition and document lifecycle")
FaultDomain.DATABASE = FaultDomain("database", "Storage adapter operations")


# Domain defaults
DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.MODEL: {"severity": Severity.ERROR, "retryable": False},
    FaultDomain.DATABASE: {"severity": Severity.ERROR, "retryable": True},
}


# ============================================================================
# Fault - Base Class
# ============================================================================

class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    A fault carries:
    - Stable machine-readable code
    - Human-readable message
    - Severity level
    - Domain classification
    - Retry semantics
    - Additional metadata

    Example:
        ```python
        raise Fault(
            code="DOCUMENT_NOT_FOUND",
            message="Document with primary key 'abc' not found",
            domain=FaultDomain.MODEL,
        )
        ```
    """

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        domain: FaultDomain | None = None,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        self.code = code if code is not None else getattr(self, "code", None)
        self.message = message if message is not None else getattr(self, "message", None)
        self.domain = domain if domain is not None else getattr(self, "domain", None)

        if self.code is None or self.message is None or self.domain is None:
            raise TypeError(f"{self.__class__.__name__} missing required code, message, or domain")

        super().__init__(self.message)

        defaults = DOMAIN_DEFAULTS.get(self.domain, {"severity": Severity.ERROR, "retryable": False})
        self.severity = severity or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]

        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize fault to dictionary.

        Returns:
            Dictionary representation suitable for logging/serialization
        """
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }


# ============================================================================
# MODEL Faults (document lifecycle)
# ============================================================================

class DocumentFault(Fault):
    """Base class for model definition and document lifecycle faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        domain: FaultDomain = FaultDomain.MODEL,
        severity: Severity = Severity.ERROR,
        retryable: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=domain,
            severity=severity,
            retryable=retryable,
            metadata=metadata,
        )


class ValidationError(DocumentFault):
    """A document failed schema or custom validation."""

    def __init__(self, message: str, *, path: str = "", document: Any = None, **kwargs):
        super().__init__(
            code="VALIDATION_FAILED",
            message=message,
            metadata={"path": path, **kwargs.get("metadata", {})},
        )
        self.path = path
        self.document = document


class ConstraintError(DocumentFault):
    """A model definition violates a structural constraint."""

    def __init__(self, model: str, reason: str, **kwargs):
        super().__init__(
            code="MODEL_CONSTRAINT",
            message=f"Invalid definition for model '{model}': {reason}",
            severity=Severity.FATAL,
            metadata={"model": model, "reason": reason, **kwargs.get("metadata", {})},
        )
        self.model = model
        self.reason = reason


class PersistenceError(DocumentFault):
    """A storage operation reported an error."""

    def __init__(self, table: str, operation: str, reason: str, **kwargs):
        super().__init__(
            code="PERSISTENCE_FAILED",
            message=f"{operation} on table '{table}' failed: {reason}",
            domain=FaultDomain.DATABASE,
            retryable=kwargs.pop("retryable", False),
            metadata={"table": table, "operation": operation, "reason": reason,
                      **kwargs.get("metadata", {})},
        )
        self.table = table
        self.operation = operation
        self.reason = reason


class ProgrammingError(DocumentFault):
    """The persistence core was used in a way that can never succeed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            code="PROGRAMMING_ERROR",
            message=message,
            severity=Severity.FATAL,
            metadata=kwargs.get("metadata", {}),
        )


class DocumentNotFoundError(DocumentFault):
    """No document exists for the requested primary key."""

    def __init__(self, table: str, key: Any, **kwargs):
        super().__init__(
            code="DOCUMENT_NOT_FOUND",
            message=f"Document with primary key {key!r} not found in '{table}'",
            severity=Severity.WARN,
            metadata={"table": table, "key": key, **kwargs.get("metadata", {})},
        )
        self.table = table
        self.key = key


class CascadeCancelledError(DocumentFault):
    """A cascade was cancelled before all of its operations were issued."""

    def __init__(self, operation: str, **kwargs):
        super().__init__(
            code="CASCADE_CANCELLED",
            message=f"Cascade cancelled during {operation}",
            severity=Severity.WARN,
            metadata={"operation": operation, **kwargs.get("metadata", {})},
        )
        self.operation = operation


# ============================================================================
# DATABASE / CONFIG Faults
# ============================================================================

class DatabaseConnectionError(Fault):
    """Database connection failed."""

    def __init__(self, url: str, reason: str, **kwargs):
        super().__init__(
            code="DB_CONNECTION_FAILED",
            message=f"Database connection failed ({url}): {reason}",
            domain=FaultDomain.DATABASE,
            severity=Severity.FATAL,
            retryable=True,
            metadata={"url": url, "reason": reason, **kwargs.get("metadata", {})},
        )


class ConfigError(Fault):
    """Raised when configuration validation fails."""

    def __init__(self, key: str, reason: str, **kwargs):
        super().__init__(
            code="CONFIG_INVALID",
            message=f"Invalid configuration value for '{key}': {reason}",
            domain=FaultDomain.CONFIG,
            metadata={"key": key, "reason": reason, **kwargs.get("metadata", {})},
        )
        self.key = key
