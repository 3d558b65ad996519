"""Merge the output of every running component into one tagged stream.

Each stdout/stderr pipe gets its own reader task. Readers never touch the
terminal: they push finished lines onto a queue and a single writer task owns
the sink, so lines from different components can interleave but never mix.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Protocol

import click
import structlog

if TYPE_CHECKING:
    from .models import Component

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# config color name -> click color name
TERMINAL_COLORS = {
    "blue": "blue",
    "green": "green",
    "yellow": "yellow",
    "purple": "magenta",
    "white": "white",
    "red": "red",
    "cyan": "cyan",
}


@dataclass(frozen=True)
class OutputLine:
    component: str
    color: str
    text: str
    stream: str = "stdout"


@dataclass(frozen=True)
class SystemMessage:
    text: str
    error: bool = False


class HasOutput(Protocol):
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None


class LineSplitter:
    """Turn arbitrary byte chunks into complete lines.

    Bytes are decoded incrementally so a multi-byte character split across two
    reads survives; undecodable bytes are replaced rather than dropped.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        self._pending += self._decoder.decode(data)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def flush(self) -> list[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if not tail:
            return []
        return [tail.removesuffix("\r")]


class OutputSink:
    """Renders lines and system messages onto a text stream.

    ``color=None`` lets click decide: styles are kept on a terminal and
    stripped everywhere else.
    """

    def __init__(self, file: IO[str] | None = None, color: bool | None = None) -> None:
        self.file = file
        self.color = color

    def format_line(self, line: OutputLine) -> str:
        name = click.style(line.component, fg=TERMINAL_COLORS.get(line.color), bold=True)
        return f"[{name}] {line.text}"

    def format_system(self, message: SystemMessage) -> str:
        left = click.style("-=[", fg="red", bold=True)
        right = click.style("]=-", fg="red", bold=True)
        body = click.style(message.text, fg="red" if message.error else "white", bold=True)
        return f"{left} {body} {right}"

    def write(self, item: OutputLine | SystemMessage) -> None:
        if isinstance(item, OutputLine):
            text = self.format_line(item)
        else:
            text = self.format_system(item)
        click.echo(text, file=self.file, color=self.color)


class OutputMultiplexer:
    def __init__(self, sink: OutputSink | None = None, *, chunk_size: int = READ_CHUNK_SIZE) -> None:
        self.sink = sink or OutputSink()
        self.chunk_size = chunk_size
        self._queue: asyncio.Queue[OutputLine | SystemMessage | None] = asyncio.Queue()
        self._readers: set[asyncio.Task[None]] = set()
        self._writer: asyncio.Task[None] | None = None

    async def __aenter__(self) -> OutputMultiplexer:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name="conductor-output-writer")

    def emit(self, item: OutputLine | SystemMessage) -> None:
        self._queue.put_nowait(item)

    def system(self, text: str, *, error: bool = False) -> None:
        self.emit(SystemMessage(text, error=error))

    def attach(
        self, name: str, color: str, stream: asyncio.StreamReader | None, stream_name: str = "stdout"
    ) -> asyncio.Task[None] | None:
        """Start pumping ``stream`` into the output, tagged with ``name``."""
        if stream is None:
            return None
        task = asyncio.create_task(
            self._pump(name, color, stream, stream_name), name=f"conductor-read-{name}-{stream_name}"
        )
        self._readers.add(task)
        task.add_done_callback(self._readers.discard)
        return task

    def attach_process(self, component: Component, process: HasOutput) -> list[asyncio.Task[None]]:
        tasks = [
            self.attach(component.name, component.color, process.stdout, "stdout"),
            self.attach(component.name, component.color, process.stderr, "stderr"),
        ]
        return [task for task in tasks if task is not None]

    async def _pump(self, name: str, color: str, stream: asyncio.StreamReader, stream_name: str) -> None:
        splitter = LineSplitter()
        try:
            while True:
                chunk = await stream.read(self.chunk_size)
                if not chunk:
                    break
                for text in splitter.feed(chunk):
                    self.emit(OutputLine(name, color, text, stream_name))
        finally:
            # an unterminated last line still gets its tag, even when cancelled
            for text in splitter.flush():
                self.emit(OutputLine(name, color, text, stream_name))

    async def _write_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            self.sink.write(item)

    async def wait_readers(self, timeout: float | None = None) -> None:
        """Wait for every attached stream to hit EOF.

        Readers still open after ``timeout`` (a grandchild holding the pipe,
        usually) are cancelled; their partial lines are still emitted.
        """
        readers = set(self._readers)
        if not readers:
            return
        done, pending = await asyncio.wait(readers, timeout=timeout)
        for task in pending:
            logger.debug("output_reader_cancelled", task=task.get_name())
            task.cancel()
        results = await asyncio.gather(*done, *pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("output_reader_failed", error=repr(result))
                self.system(f"Lost output: {result}", error=True)

    async def close(self, timeout: float | None = None) -> None:
        """Wait for the readers, then write out everything still queued."""
        await self.wait_readers(timeout)
        if self._writer is not None:
            self._queue.put_nowait(None)
            await self._writer
            self._writer = None
