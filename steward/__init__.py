"""Steward - delegated data-management scripts with sandboxed execution.

Hands data tasks to a headless code-generation CLI, runs the scripts it writes
inside a sandbox, and gates risky actions behind human approval.
"""

__version__ = "0.1.0"
