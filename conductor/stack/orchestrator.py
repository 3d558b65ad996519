"""Top-level coordination of setup mode and run mode."""

from __future__ import annotations

import signal
import asyncio
from collections.abc import Iterable, Sequence
from typing import Protocol

import structlog

from .context import StackContext
from .errors import SpawnFailure
from .models import Component
from .multiplexer import HasOutput, OutputMultiplexer, OutputSink
from .pipeline import SetupPipelineRunner
from .policy import (
    ChildExit,
    Interrupted,
    ShutdownPolicy,
    Spawned,
    SpawnFailed,
    StackEvent,
    StackState,
    StartupComplete,
)
from .selector import select
from .supervisor import ExitStatus, ProcessSupervisor

logger = structlog.get_logger(__name__)


class ProcessHandle(HasOutput, Protocol):
    component: Component

    @property
    def name(self) -> str: ...


class Supervisor(Protocol):
    async def spawn(self, component: Component) -> ProcessHandle: ...

    async def wait(self, running: ProcessHandle) -> ExitStatus: ...

    async def terminate_all(self) -> None: ...


class Orchestrator:
    """Drives one invocation: selection, then setup or run.

    In run mode every selected component is spawned concurrently, their
    output is multiplexed, and the first of an interrupt or a component exit
    (subject to the stop condition) drains the whole stack.
    """

    def __init__(
        self,
        context: StackContext,
        *,
        sink: OutputSink | None = None,
        supervisor: Supervisor | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.context = context
        self.sink = sink or OutputSink()
        self.supervisor: Supervisor = supervisor or ProcessSupervisor(context)
        self.install_signal_handlers = install_signal_handlers
        self.policy = ShutdownPolicy(stop_on=context.stop_on)
        self._interrupt = asyncio.Event()
        self._stopping = asyncio.Event()
        self._waiters: dict[asyncio.Task[ExitStatus], ProcessHandle] = {}
        self._multiplexer: OutputMultiplexer | None = None

    def select(
        self, name: str | None = None, tags: Iterable[str] | None = None, group: str | None = None
    ) -> list[Component]:
        return select(self.context.graph, name=name, tags=tags, group=group)

    def interrupt(self) -> None:
        """Ask the running stack to drain; safe to call from a signal handler."""
        logger.info("stack_interrupted")
        self._interrupt.set()
        self._stopping.set()

    async def setup(self, components: Sequence[Component]) -> int:
        async with OutputMultiplexer(self.sink) as multiplexer:
            if not components:
                multiplexer.system("No components selected")
                return 0

            runner = SetupPipelineRunner(self.context, multiplexer)
            results = await runner.run(components)

            failed = [result for result in results if not result.ok]
            for result in results:
                if result.error is not None:
                    multiplexer.system(f"Setup failed for {result.component}: {result.error.message}", error=True)
                else:
                    multiplexer.system(f"{result.component} is set up")
            if failed:
                names = ", ".join(result.component for result in failed)
                multiplexer.system(f"Setup failed for {len(failed)} of {len(results)} components: {names}", error=True)
        return 1 if failed else 0

    async def run(self, components: Sequence[Component]) -> int:
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            async with OutputMultiplexer(self.sink) as multiplexer:
                self._multiplexer = multiplexer
                if not components:
                    multiplexer.system("No components selected")
                await self._start_all(components)
                await self._supervise()
                await multiplexer.wait_readers(timeout=self.context.grace_period)
                multiplexer.system(
                    f"Stack stopped (exit code {self.policy.exit_code})", error=self.policy.exit_code != 0
                )
        finally:
            self._multiplexer = None
            for sig in installed:
                loop.remove_signal_handler(sig)
        return self.policy.exit_code

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        if not self.install_signal_handlers:
            return []
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.interrupt)
            except (NotImplementedError, RuntimeError, ValueError) as error:
                # no loop signal support here (Windows, or not the main thread)
                logger.debug("signal_handler_unavailable", signal=sig.name, error=repr(error))
                continue
            installed.append(sig)
        return installed

    def _transition(self, event: StackEvent) -> StackState:
        state = self.policy.transition(event)
        if state is StackState.DRAINING:
            self._stopping.set()
        return state

    @property
    def multiplexer(self) -> OutputMultiplexer:
        if self._multiplexer is None:
            raise RuntimeError("multiplexer is only available while the stack is running")
        return self._multiplexer

    async def _start_all(self, components: Sequence[Component]) -> None:
        await asyncio.gather(*(self._start(component) for component in components))
        if self._interrupt.is_set():
            self._on_interrupt()
        self._transition(StartupComplete())

    def _on_interrupt(self) -> None:
        if self.policy.interrupted:
            return
        self.multiplexer.system("Shutting down")
        self._transition(Interrupted())

    async def _start(self, component: Component) -> None:
        if component.delay:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=component.delay)
            except asyncio.TimeoutError:
                pass
        if self._stopping.is_set():
            logger.info("component_start_skipped", component=component.name)
            return

        try:
            handle = await self.supervisor.spawn(component)
        except SpawnFailure as error:
            self.multiplexer.system(f"Failed to start {component.name}: {error.message}", error=True)
            self._transition(SpawnFailed(component.name, error))
            return

        self._transition(Spawned(component.name))
        self.multiplexer.attach_process(component, handle)
        self.multiplexer.system(f"Started {component.name}")
        task = asyncio.create_task(self.supervisor.wait(handle), name=f"conductor-wait-{component.name}")
        self._waiters[task] = handle

    async def _supervise(self) -> None:
        """Wait for the first of interrupt or exit, then drain until done."""
        interrupt = asyncio.create_task(self._interrupt.wait(), name="conductor-interrupt")
        drain: asyncio.Task[None] | None = None
        try:
            while self.policy.state is not StackState.DONE:
                if self.policy.state is StackState.DRAINING and drain is None:
                    drain = asyncio.create_task(self.supervisor.terminate_all(), name="conductor-drain")

                watched: set[asyncio.Future] = set(self._waiters)
                if not interrupt.done():
                    watched.add(interrupt)
                if not watched:
                    break

                done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
                if interrupt in done:
                    self._on_interrupt()
                for task in done:
                    handle = self._waiters.pop(task, None)
                    if handle is None:
                        continue
                    status = task.result()
                    self._report_exit(handle, status)
                    self._transition(ChildExit(handle.name, status))
            # exited leaders can leave background children in their groups
            await (drain if drain is not None else self.supervisor.terminate_all())
        finally:
            interrupt.cancel()

    def _report_exit(self, handle: ProcessHandle, status: ExitStatus) -> None:
        if status.failed:
            self.multiplexer.system(f"Component {handle.name} {status.describe()}", error=True)
        else:
            self.multiplexer.system(f"Component shutdown {handle.name}")


def run_stack(
    context: StackContext,
    *,
    name: str | None = None,
    tags: Iterable[str] | None = None,
    group: str | None = None,
    sink: OutputSink | None = None,
) -> int:
    orchestrator = Orchestrator(context, sink=sink)
    components = orchestrator.select(name=name, tags=tags, group=group)
    return asyncio.run(orchestrator.run(components))


def setup_stack(
    context: StackContext,
    *,
    name: str | None = None,
    tags: Iterable[str] | None = None,
    group: str | None = None,
    sink: OutputSink | None = None,
) -> int:
    orchestrator = Orchestrator(context, sink=sink)
    components = orchestrator.select(name=name, tags=tags, group=group)
    return asyncio.run(orchestrator.setup(components))
