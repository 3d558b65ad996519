"""Run-mode lifecycle as an explicit state machine.

``ShutdownPolicy.transition`` is the only place that decides when the stack
starts draining and what the run's exit status is. The orchestrator feeds it
events and acts on the resulting state; nothing here touches a process.

    STARTING -> RUNNING -> DRAINING -> DONE
        \\___________________^

Stop rules:

* a spawn failure or an interrupt drains the stack;
* with ``StopCondition.ANY`` the first component exit drains the stack;
* with ``StopCondition.FAILURE`` only a failed exit does, and the stack is
  done once every component has exited on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import structlog

from conductor import settings

from .errors import ConductorError
from .models import StopCondition
from .supervisor import ExitStatus

logger = structlog.get_logger(__name__)


class StackState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


@dataclass(frozen=True)
class Spawned:
    component: str


@dataclass(frozen=True)
class SpawnFailed:
    component: str
    error: ConductorError


@dataclass(frozen=True)
class StartupComplete:
    pass


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class ChildExit:
    component: str
    status: ExitStatus


StackEvent = Spawned | SpawnFailed | StartupComplete | Interrupted | ChildExit


@dataclass
class ShutdownPolicy:
    stop_on: StopCondition = StopCondition.ANY
    state: StackState = StackState.STARTING
    live: set[str] = field(default_factory=set)
    started: bool = False
    interrupted: bool = False
    spawn_failures: list[SpawnFailed] = field(default_factory=list)
    trigger: ChildExit | None = None
    exits: list[ChildExit] = field(default_factory=list)

    def transition(self, event: StackEvent) -> StackState:
        if self.state is StackState.DONE:
            return self.state

        previous = self.state
        if isinstance(event, Spawned):
            self.live.add(event.component)
        elif isinstance(event, SpawnFailed):
            self.spawn_failures.append(event)
            self._drain()
        elif isinstance(event, StartupComplete):
            self.started = True
            if self.state is StackState.STARTING:
                self.state = StackState.RUNNING
        elif isinstance(event, Interrupted):
            self.interrupted = True
            self._drain()
        elif isinstance(event, ChildExit):
            self.live.discard(event.component)
            self.exits.append(event)
            if self.state is not StackState.DRAINING and self._stops_stack(event.status):
                self.trigger = event
                self._drain()
        else:
            raise TypeError(f"unknown stack event {event!r}")

        if self.started and not self.live:
            self.state = StackState.DONE

        if self.state is not previous:
            logger.debug(
                "stack_state_changed", previous=previous.value, state=self.state.value, stack_event=repr(event)
            )
        return self.state

    def _drain(self) -> None:
        if self.state in (StackState.STARTING, StackState.RUNNING):
            self.state = StackState.DRAINING

    def _stops_stack(self, status: ExitStatus) -> bool:
        if self.stop_on is StopCondition.ANY:
            return True
        return status.failed

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return settings.INTERRUPTED_EXIT_CODE
        if self.spawn_failures:
            return 1
        if self.trigger is not None and self.trigger.status.failed:
            return self.trigger.status.exit_code
        for event in self.exits:
            if event.status.failed:
                return event.status.exit_code
        return 0
