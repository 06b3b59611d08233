"""Cancellation, timeouts and credential fingerprints."""

from docgen_orchestrator.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
    sleep_with_cancellation,
)
from docgen_orchestrator.utils.hashing import credential_fingerprint, sha256_text

__all__ = [
    "CancellationToken",
    "credential_fingerprint",
    "run_with_timeout",
    "sha256_text",
    "sleep_with_cancellation",
]
