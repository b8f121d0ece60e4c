"""
CLI tools for linedb administration.

This module provides command-line tools for:
- check: Replay collection files, report garbage and torn tails, repair
  and compact them

Invariants:
    - Tools work offline (no running process may have the files open)
    - Operations are idempotent
"""

from .check import CheckConfig, CheckResult, CheckTool

__all__ = ["CheckTool", "CheckConfig", "CheckResult"]
