"""
docgen-orchestrator - package root

File: src/docgen_orchestrator/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for the AI request orchestration and context assembly engine.

What should be included in this file
- Version export and a small public API surface.
- No heavy imports at import time.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
