"""Security helpers: secret redaction for logs and caller-visible errors."""

from docgen_orchestrator.security.redaction import (
    REDACTED_VALUE,
    is_sensitive_key,
    redact_structure,
    redact_text,
)

__all__ = [
    "REDACTED_VALUE",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
