"""External adapters for the retryrounds system.

This package contains all external dependencies (pytest, the filesystem,
the terminal) and provides implementations of the core port interfaces.

Adapter Organization:

- engine/: Execution engines and spec narrowing (in-process pytest)
- reporting/: Downstream consumers of the collapsed event stream (stdout, JSON Lines)
"""
