"""One-time setup: clone each component, then run its init steps in order.

Components are set up concurrently and independently. A failure stops the
rest of that component's pipeline only.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .errors import AcquisitionFailure, ConductorError, InitStepFailure
from .git import RepositoryAcquirer
from .supervisor import describe_launch_error, run_attached

if TYPE_CHECKING:
    from .context import StackContext
    from .models import CommandSpec, Component
    from .multiplexer import OutputMultiplexer

logger = structlog.get_logger(__name__)


@dataclass
class SetupResult:
    component: str
    error: ConductorError | None = None
    cloned: bool = False
    steps_run: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class SetupPipelineRunner:
    def __init__(
        self,
        context: StackContext,
        multiplexer: OutputMultiplexer,
        acquirer: RepositoryAcquirer | None = None,
    ) -> None:
        self.context = context
        self.multiplexer = multiplexer
        self.acquirer = acquirer or RepositoryAcquirer(context, multiplexer)

    async def run(self, components: Sequence[Component]) -> list[SetupResult]:
        return list(await asyncio.gather(*(self.run_component(component) for component in components)))

    async def run_component(self, component: Component) -> SetupResult:
        result = SetupResult(component.name)
        log = logger.bind(component=component.name)
        try:
            if component.repository is not None:
                result.cloned = await self.acquirer.acquire(component)
                if result.cloned:
                    self.multiplexer.system(f"{component.name} cloned")
                else:
                    self.multiplexer.system(f"{component.name} already cloned, skipping")
            for index, step in enumerate(component.init, start=1):
                await self._run_step(component, index, step)
                result.steps_run = index
        except (AcquisitionFailure, InitStepFailure) as error:
            log.info("setup_failed", error=error.message, steps_run=result.steps_run)
            result.error = error
        else:
            log.info("setup_finished", cloned=result.cloned, steps_run=result.steps_run)
        return result

    async def _run_step(self, component: Component, index: int, step: CommandSpec) -> None:
        cwd = self.context.working_dir(component, step)
        env = self.context.environment(component, step)
        self.multiplexer.system(f"{component.name}: executing {step}")
        try:
            status = await run_attached(
                component,
                step.argv,
                cwd=cwd,
                env=env,
                multiplexer=self.multiplexer,
                reader_timeout=self.context.grace_period,
            )
        except OSError as error:
            raise InitStepFailure(
                f"init step {index} ({step}) failed: {describe_launch_error(step.argv, cwd, error)}",
                component=component.name,
                step=index,
            ) from error
        if status.returncode != 0:
            raise InitStepFailure(
                f"init step {index} ({step}) {status.describe()}",
                component=component.name,
                step=index,
                returncode=status.exit_code,
            )
