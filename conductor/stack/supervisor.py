"""Spawn, wait on and stop component processes."""

from __future__ import annotations

import os
import signal
import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .errors import SpawnFailure

if TYPE_CHECKING:
    from .context import StackContext
    from .models import CommandSpec, Component
    from .multiplexer import OutputMultiplexer

logger = structlog.get_logger(__name__)

# Each component gets its own process group so `npm run dev` and friends
# take their children down with them.
USE_PROCESS_GROUPS = os.name == "posix"

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

EXIT_POLL_INTERVAL = 0.05

# Exit codes a process reports when it dies from our own SIGTERM/SIGKILL,
# either as a raw signal or through a shell wrapper.
_REQUESTED_STOP_CODES = {
    128 + signal.SIGINT,
    128 + signal.SIGTERM,
    128 + SIGKILL,
}


@dataclass(frozen=True)
class ExitStatus:
    """How a process ended.

    ``returncode`` follows asyncio: negative values mean the process was
    killed by that signal. ``requested`` records that conductor had asked the
    process to stop before it exited.
    """

    returncode: int
    requested: bool = False

    @property
    def signal(self) -> int | None:
        if self.returncode < 0:
            return -self.returncode
        return None

    @property
    def exit_code(self) -> int:
        """The status as a shell would report it (128 + N for signal N)."""
        if self.signal is not None:
            return 128 + self.signal
        return self.returncode

    @property
    def failed(self) -> bool:
        if self.returncode == 0:
            return False
        if self.requested and self.exit_code in _REQUESTED_STOP_CODES:
            return False
        return True

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = f"signal {self.signal}"
            return f"was stopped by {name}"
        return f"exited with code {self.returncode}"


async def spawn_process(
    argv: Sequence[str], *, cwd: Path, env: dict[str, str], new_session: bool = False
) -> asyncio.subprocess.Process:
    """Start ``argv`` with stdin detached and both output pipes captured."""
    kwargs = {}
    if new_session and USE_PROCESS_GROUPS:
        kwargs["start_new_session"] = True
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        **kwargs,
    )


async def wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """Return the exit status as soon as the process itself has exited.

    ``Process.wait`` also waits for the output pipes to close, which does not
    happen while a background child still holds them.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_INTERVAL)
    return process.returncode


async def run_attached(
    component: Component,
    argv: Sequence[str],
    *,
    cwd: Path,
    env: dict[str, str],
    multiplexer: OutputMultiplexer,
    reader_timeout: float | None = None,
) -> ExitStatus:
    """Run a one-off command to completion with its output tagged as ``component``.

    Its output is drained before returning, for at most ``reader_timeout``
    seconds after it exits: a daemon it left behind may hold the pipes open
    for good. Raises ``OSError`` when the command cannot be launched.
    """
    process = await spawn_process(argv, cwd=cwd, env=env)
    readers = multiplexer.attach_process(component, process)
    returncode = await wait_for_exit(process)
    if readers:
        done, pending = await asyncio.wait(readers, timeout=reader_timeout)
        for task in pending:
            logger.info("step_output_abandoned", component=component.name, task=task.get_name())
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()
    return ExitStatus(returncode)


def describe_launch_error(argv: Sequence[str], cwd: Path, error: OSError) -> str:
    if not cwd.is_dir():
        return f"working directory {cwd} does not exist"
    if isinstance(error, FileNotFoundError):
        return f"command not found: {argv[0]}"
    if isinstance(error, PermissionError):
        return f"permission denied running {argv[0]}"
    return f"could not launch {argv[0]}: {error.strerror or error}"


class RunningProcess:
    """A live start command and the component it belongs to."""

    def __init__(self, component: Component, process: asyncio.subprocess.Process, command: CommandSpec, cwd: Path):
        self.component = component
        self.process = process
        self.command = command
        self.cwd = cwd
        self.termination_requested = False

    def __repr__(self) -> str:
        return f"<RunningProcess {self.name} pid={self.pid}>"

    @property
    def name(self) -> str:
        return self.component.name

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def wait(self) -> ExitStatus:
        returncode = await wait_for_exit(self.process)
        return ExitStatus(returncode, requested=self.termination_requested)

    def send_signal(self, sig: int) -> bool:
        """Signal the process group; False when nothing in it is left.

        The group is signalled even after its leader exited, since background
        children started by the command stay in it.
        """
        try:
            if USE_PROCESS_GROUPS:
                os.killpg(self.process.pid, sig)
            elif self.process.returncode is not None:
                return False
            elif sig == SIGKILL:
                self.process.kill()
            else:
                self.process.terminate()
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def group_alive(self) -> bool:
        if USE_PROCESS_GROUPS:
            return self.send_signal(0)
        return self.process.returncode is None

    async def _wait_group(self) -> None:
        while self.process.returncode is None or self.group_alive():
            await asyncio.sleep(EXIT_POLL_INTERVAL)

    async def terminate(self, grace_period: float) -> ExitStatus:
        """SIGTERM the group, then SIGKILL once ``grace_period`` runs out."""
        if self.process.returncode is None:
            self.termination_requested = True
        if self.send_signal(signal.SIGTERM):
            logger.debug("component_terminating", component=self.name, pid=self.pid)
            try:
                await asyncio.wait_for(self._wait_group(), timeout=grace_period)
            except asyncio.TimeoutError:
                logger.warning("component_killed", component=self.name, pid=self.pid, grace_period=grace_period)
                self.send_signal(SIGKILL)
        return await self.wait()


class ProcessSupervisor:
    """Owns every start-command process of one run.

    Processes enter the live set on spawn and leave it once ``wait`` has seen
    them exit; the set is only touched under ``_lock``. Every spawned process
    is also remembered so its group can be swept when the stack drains.
    """

    def __init__(self, context: StackContext) -> None:
        self.context = context
        self._live: dict[str, RunningProcess] = {}
        self._spawned: list[RunningProcess] = []
        self._lock = asyncio.Lock()

    @property
    def live(self) -> list[RunningProcess]:
        return list(self._live.values())

    async def spawn(self, component: Component) -> RunningProcess:
        command = component.start
        if command is None:
            raise SpawnFailure("no start command configured", component=component.name)

        cwd = self.context.working_dir(component, command)
        env = self.context.environment(component, command)
        try:
            process = await spawn_process(command.argv, cwd=cwd, env=env, new_session=True)
        except OSError as error:
            logger.info("component_spawn_failed", component=component.name, command=str(command), error=repr(error))
            raise SpawnFailure(describe_launch_error(command.argv, cwd, error), component=component.name) from error

        running = RunningProcess(component, process, command, cwd)
        async with self._lock:
            self._live[component.name] = running
            self._spawned.append(running)
        logger.info("component_started", component=component.name, pid=running.pid, command=str(command), cwd=str(cwd))
        return running

    async def wait(self, running: RunningProcess) -> ExitStatus:
        status = await running.wait()
        async with self._lock:
            if self._live.get(running.name) is running:
                del self._live[running.name]
        logger.info(
            "component_exited",
            component=running.name,
            pid=running.pid,
            returncode=status.returncode,
            requested=status.requested,
        )
        return status

    async def terminate(self, running: RunningProcess) -> ExitStatus:
        return await running.terminate(self.context.grace_period)

    async def terminate_all(self) -> None:
        """Stop every spawned process group at once, so draining takes one grace period.

        Groups whose leader already exited are included; a background child
        may still be running in them.
        """
        async with self._lock:
            targets = list(self._spawned)
        if targets:
            logger.info("stack_draining", components=[p.name for p in targets if p.returncode is None])
        await asyncio.gather(*(self.terminate(running) for running in targets))
