"""
nox-core — package root

File: src/nox_core/__init__.py
Last updated: 2026-10-18

Purpose
- Decision-and-execution core of an AI coding assistant: capability registry and execution,
  mode policy, streaming tool-call assembly and the versioned message envelope.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
