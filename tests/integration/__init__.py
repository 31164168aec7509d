"""
gitchorus — integration test package

File: tests/integration/__init__.py
Last updated: 2026-10-18

Purpose
- Test package marker for tests that drive the CLI as a real subprocess.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not trigger network access.
"""
