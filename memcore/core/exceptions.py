"""
MemCore — Centralized Exception Taxonomy
==========================================
Category-based exception hierarchy with a severity property.

Propagation policy:
- ``ExtractionError`` is always recovered inside the ingestion manager
  (logged, never surfaced to the caller of ``process_unit``).
- ``StorageError`` propagates from the operation that failed, but never
  aborts sibling concurrent branches.
- ``InvalidArgumentError`` signals a caller contract violation.
- Missing ids are not exceptions: deletes return ``False`` / ``0`` and
  undo returns ``restored=False``.

Usage:
    from memcore.core.exceptions import StorageError

    raise StorageError("insert failed", memory_id="abc-123")
"""

from __future__ import annotations

from enum import StrEnum


class ErrorSeverity(StrEnum):
    """Error severity levels: LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MemCoreError(Exception):
    """
    Base exception for all MemCore-specific errors.

    Carries a ``severity`` and ``error_code`` for programmatic handling,
    plus optional identifiers for tracing (memory id, memory type).
    """

    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    error_code: str = "MEMCORE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        memory_id: str | None = None,
        memory_type: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.memory_id = memory_id
        self.memory_type = memory_type
        self.correlation_id = correlation_id
        super().__init__(message)

    def __repr__(self) -> str:
        parts = [
            f"{self.__class__.__name__}(",
            f"error_code={self.error_code!r}, ",
            f"severity={self.severity.value!r}",
        ]
        if self.memory_id:
            parts.append(f", memory_id={self.memory_id!r}")
        if self.memory_type:
            parts.append(f", memory_type={self.memory_type!r}")
        if self.correlation_id:
            parts.append(f", correlation_id={self.correlation_id!r}")
        parts.append(")")
        return "".join(parts)


# ── Extraction ────────────────────────────────────────────────────────────


class ExtractionError(MemCoreError):
    """An extractor failed, timed out, or returned malformed output."""

    severity = ErrorSeverity.LOW
    error_code = "EXTRACTION_ERROR"


# ── Storage ───────────────────────────────────────────────────────────────


class StorageError(MemCoreError):
    """Relational or vector store read/write failure."""

    severity = ErrorSeverity.HIGH
    error_code = "STORAGE_ERROR"


# ── Caller Contract ───────────────────────────────────────────────────────


class InvalidArgumentError(MemCoreError):
    """Unknown retrieval method, missing capability, or malformed input."""

    severity = ErrorSeverity.MEDIUM
    error_code = "INVALID_ARGUMENT_ERROR"


# ── Integration Exceptions ────────────────────────────────────────────────


class IntegrationError(MemCoreError):
    """Errors in external capability integrations (LLMs, embeddings)."""

    error_code = "INTEGRATION_ERROR"


class LLMError(IntegrationError):
    """Raised when an LLM capability call fails or returns unusable output."""

    severity = ErrorSeverity.MEDIUM
    error_code = "LLM_ERROR"


# ── Configuration Exceptions ──────────────────────────────────────────────


class ConfigurationError(MemCoreError):
    """Errors in configuration (missing settings, invalid values)."""

    severity = ErrorSeverity.HIGH
    error_code = "CONFIGURATION_ERROR"


class MissingConfigurationError(ConfigurationError):
    """Raised when required configuration is missing."""

    error_code = "MISSING_CONFIGURATION_ERROR"
