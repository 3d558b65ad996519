from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from conductor import settings

from .models import CommandSpec, Component, ComponentGraph, StopCondition

_VARIABLE = re.compile(r"%(\w+)%|\$\{(\w+)\}")


def expand_env(value: str, env: Mapping[str, str]) -> str:
    """Expand ``%VAR%`` and ``${VAR}`` references; unknown names are left alone."""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1) or match.group(2)
        return env.get(key, match.group(0))

    return _VARIABLE.sub(replace, value)


@dataclass(frozen=True)
class StackContext:
    """Everything one invocation needs to know about the stack it drives.

    Passed explicitly to the selector, the setup pipeline, the supervisor and
    the orchestrator instead of living in module globals.
    """

    graph: ComponentGraph
    root: Path
    cwd: Path = field(default_factory=Path.cwd)
    base_env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    grace_period: float = settings.GRACE_PERIOD
    stop_on: StopCondition = StopCondition.ANY
    group_env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        graph: ComponentGraph,
        root: Path,
        *,
        grace_period: float | None = None,
        stop_on: StopCondition | str | None = None,
        group: str | None = None,
        environ: Mapping[str, str] | None = None,
        invocation_dir: Path | None = None,
    ) -> StackContext:
        """Resolve options: explicit arguments, then the document, then settings."""
        if grace_period is None:
            grace_period = graph.grace_period if graph.grace_period is not None else settings.GRACE_PERIOD
        if stop_on is None:
            stop_on = graph.stop_on
        group_env: Mapping[str, str] = {}
        if group:
            found = graph.group(group)
            if found is not None:
                group_env = dict(found.env)
        return cls(
            graph=graph,
            root=root,
            cwd=invocation_dir or Path.cwd(),
            base_env=dict(os.environ if environ is None else environ),
            grace_period=grace_period,
            stop_on=StopCondition(stop_on),
            group_env=group_env,
        )

    def environment(self, component: Component, command: CommandSpec | None = None) -> dict[str, str]:
        """Inherited environment overridden by command, component, then group env."""
        env = dict(self.base_env)
        overrides: dict[str, str] = {}
        if command is not None:
            overrides.update(command.env)
        overrides.update(component.env)
        overrides.update(self.group_env)
        for key, value in overrides.items():
            env[key] = expand_env(value, env)
        return env

    def working_dir(self, component: Component, command: CommandSpec | None = None) -> Path:
        """Directory a command of ``component`` runs in.

        A command's own ``dir`` wins; components with a repository or an
        explicit ``path`` run in that tree; anything else runs in the
        directory conductor was started from.
        """
        if command is not None and command.dir:
            relative = command.dir
        elif component.repo or component.path:
            relative = component.directory
        else:
            return self.cwd
        path = Path(expand_env(relative, self.base_env)).expanduser()
        if path.is_absolute():
            return path
        return self.root / path
