"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Lock contention and aborted domain groups still exit with ``OK``.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
