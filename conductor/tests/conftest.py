from __future__ import annotations

import os
import sys
import asyncio
from pathlib import Path
from typing import Any

import pytest

from conductor.logs import configure_logging
from conductor.stack.context import StackContext
from conductor.stack.errors import SpawnFailure
from conductor.stack.models import Component, ComponentGraph
from conductor.stack.multiplexer import OutputLine, OutputSink, SystemMessage
from conductor.stack.supervisor import ExitStatus


def python_command(code: str, **extra: Any) -> dict[str, Any]:
    """A command descriptor that runs ``code`` with the current interpreter."""
    return {"command": sys.executable, "args": ["-c", code], **extra}


def process_running(pid: int) -> bool:
    """False once the process is gone or only a zombie waiting to be reaped."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
    return True


def make_graph(*components: dict[str, Any], **extra: Any) -> ComponentGraph:
    return ComponentGraph.model_validate({"name": "test stack", "components": list(components), **extra})


def make_context(graph: ComponentGraph, root: Path, **kwargs: Any) -> StackContext:
    kwargs.setdefault("grace_period", 2.0)
    kwargs.setdefault("invocation_dir", root)
    return StackContext.create(graph, root, **kwargs)


class RecordingSink(OutputSink):
    """Keeps everything the multiplexer writes instead of printing it."""

    def __init__(self) -> None:
        super().__init__(color=False)
        self.items: list[OutputLine | SystemMessage] = []

    def write(self, item: OutputLine | SystemMessage) -> None:
        self.items.append(item)

    @property
    def lines(self) -> list[OutputLine]:
        return [item for item in self.items if isinstance(item, OutputLine)]

    @property
    def messages(self) -> list[SystemMessage]:
        return [item for item in self.items if isinstance(item, SystemMessage)]

    def texts(self, component: str, stream: str = "stdout") -> list[str]:
        return [line.text for line in self.lines if line.component == component and line.stream == stream]


class FakeProcess:
    """Stands in for a RunningProcess: no pipes, exits when told to."""

    def __init__(self, component: Component, supervisor: FakeSupervisor) -> None:
        self.component = component
        self.supervisor = supervisor
        self.stdout = None
        self.stderr = None
        self.requested = False
        self.terminate_started: float | None = None
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def name(self) -> str:
        return self.component.name

    def exit(self, returncode: int) -> None:
        if not self._exit.done():
            self._exit.set_result(returncode)

    async def wait(self) -> ExitStatus:
        returncode = await self._exit
        return ExitStatus(returncode, requested=self.requested)

    async def terminate(self) -> None:
        if self._exit.done():
            return
        self.requested = True
        self.terminate_started = asyncio.get_running_loop().time()
        self.supervisor.terminated.append(self.name)
        await asyncio.sleep(self.supervisor.terminate_delay)
        self.exit(-15)


class FakeSupervisor:
    """In-memory supervisor so drain behaviour can be checked without processes."""

    def __init__(self, *, fail: set[str] | None = None, terminate_delay: float = 0.0) -> None:
        self.fail = fail or set()
        self.terminate_delay = terminate_delay
        self.processes: dict[str, FakeProcess] = {}
        self.spawned: list[str] = []
        self.terminated: list[str] = []
        self.spawn_attempts: list[str] = []

    async def spawn(self, component: Component) -> FakeProcess:
        self.spawn_attempts.append(component.name)
        await asyncio.sleep(0)
        if component.name in self.fail:
            raise SpawnFailure("command not found: nope", component=component.name)
        process = FakeProcess(component, self)
        self.processes[component.name] = process
        self.spawned.append(component.name)
        return process

    async def wait(self, running: FakeProcess) -> ExitStatus:
        return await running.wait()

    async def terminate_all(self) -> None:
        await asyncio.gather(*(process.terminate() for process in self.processes.values()))


@pytest.fixture(autouse=True, scope="session")
def logging_to_stderr() -> None:
    configure_logging()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def write_config(tmp_path: Path):
    import yaml

    def _write(data: dict[str, Any], name: str = "conductor.yml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return path

    return _write
