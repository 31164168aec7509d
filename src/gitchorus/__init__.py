"""
gitchorus — analysis job lifecycle engine

File: src/gitchorus/__init__.py
Last updated: 2026-10-18

Purpose
- Package root. Queues GitHub issue validations and PR reviews as cancellable jobs,
  streams their progress to observers, keeps results in a durable history, and
  publishes verdicts as idempotent GitHub comments.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
