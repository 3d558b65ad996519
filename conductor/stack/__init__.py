"""Process orchestration for a multi-component development stack.

Selection -> setup pipeline (clone + init steps) or run mode (supervised
processes whose output is multiplexed into one tagged stream, drained
together on the first exit or interrupt).
"""

from .context import StackContext
from .errors import (
    AcquisitionFailure,
    ConductorError,
    ConfigError,
    InitStepFailure,
    NotFound,
    SelectionError,
    SpawnFailure,
)
from .models import CommandSpec, Component, ComponentGraph, Group, StopCondition
from .orchestrator import Orchestrator, run_stack, setup_stack
from .selector import select

__all__ = [
    "StackContext",
    "ConductorError",
    "ConfigError",
    "SelectionError",
    "NotFound",
    "AcquisitionFailure",
    "InitStepFailure",
    "SpawnFailure",
    "CommandSpec",
    "Component",
    "ComponentGraph",
    "Group",
    "StopCondition",
    "Orchestrator",
    "run_stack",
    "setup_stack",
    "select",
]
