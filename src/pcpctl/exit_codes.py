"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by the deploy and manage entry points.

    Validation failures, unknown instances and failed operations all map to
    ``FAILURE``; there are no finer-grained codes.
    """

    OK = 0
    FAILURE = 1
