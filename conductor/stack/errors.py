"""Failures conductor reports to the user.

Every error carries the name of the component it belongs to, or ``None`` when
it belongs to the orchestration layer itself (a broken config document, for
example).
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for every failure conductor reports."""

    def __init__(self, message: str, *, component: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.component = component

    def __str__(self) -> str:
        if self.component:
            return f"[{self.component}] {self.message}"
        return self.message


class ConfigError(ConductorError):
    """The config document could not be found, read or validated."""


class SelectionError(ConductorError):
    """The requested components could not be selected."""


class NotFound(SelectionError):
    """An explicitly named component or group does not exist."""


class AcquisitionFailure(ConductorError):
    """A component's repository could not be cloned."""


class InitStepFailure(ConductorError):
    """An init command could not be launched or exited non-zero."""

    def __init__(self, message: str, *, component: str | None = None, step: int = 0, returncode: int | None = None):
        super().__init__(message, component=component)
        self.step = step
        self.returncode = returncode


class SpawnFailure(ConductorError):
    """A component's start command could not be launched."""
