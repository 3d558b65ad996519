"""conductor - run and set up a multi-component development stack.

Components are defined in conductor.yml, found by walking up from the current
directory. Every component name is also a command: ``conductor api`` runs just
the api component.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NoReturn

import click

from conductor import __version__, settings
from conductor.core.config import load_project
from conductor.logs import configure_logging
from conductor.stack.context import StackContext
from conductor.stack.errors import ConductorError
from conductor.stack.models import ComponentGraph, StopCondition
from conductor.stack.orchestrator import run_stack, setup_stack
from conductor.stack.selector import parse_tags, select

EMOJI_ERROR = "💥"


@dataclass
class Invocation:
    """Options given to the top-level command, shared with subcommands."""

    config_name: str = settings.CONFIG_FILE_NAME
    tags: list[str] = field(default_factory=list)
    stop_on: str | None = None
    grace_period: float | None = None
    _project: tuple[ComponentGraph, Path] | None = field(default=None, init=False, repr=False)

    def project(self) -> tuple[ComponentGraph, Path]:
        if self._project is None:
            self._project = load_project(self.config_name)
        return self._project

    def context(self, group: str | None = None) -> StackContext:
        graph, root = self.project()
        return StackContext.create(
            graph,
            root,
            grace_period=self.grace_period,
            stop_on=self.stop_on,
            group=group,
        )


def _fail_with_message(error: ConductorError) -> NoReturn:
    click.secho(f"{EMOJI_ERROR} {error}", fg="red", bold=True, err=True)
    raise SystemExit(1) from error


def _run_mode(
    invocation: Invocation, name: str | None = None, tags: list[str] | None = None, group: str | None = None
) -> NoReturn:
    try:
        code = run_stack(invocation.context(group), name=name, tags=tags, group=group)
    except ConductorError as error:
        _fail_with_message(error)
    raise SystemExit(code)


def _setup_mode(
    invocation: Invocation, name: str | None = None, tags: list[str] | None = None, group: str | None = None
) -> NoReturn:
    try:
        code = setup_stack(invocation.context(group), name=name, tags=tags, group=group)
    except ConductorError as error:
        _fail_with_message(error)
    raise SystemExit(code)


def _component_command(name: str, help_text: str) -> click.Command:
    @click.command(name=name, help=help_text)
    @click.pass_obj
    def cmd(invocation: Invocation) -> None:
        _run_mode(invocation, name=name)

    return cmd


def _graph_for(ctx: click.Context) -> ComponentGraph | None:
    """Best-effort config load for resolving component commands and help."""
    config_name = ctx.params.get("config_name") or settings.CONFIG_FILE_NAME
    try:
        graph, _root = load_project(config_name)
    except ConductorError:
        return None
    return graph


class StackGroup(click.Group):
    """Click group whose unknown commands fall back to component names."""

    def make_context(
        self, info_name: str | None, args: list[str], parent: click.Context | None = None, **extra: Any
    ) -> click.Context:
        # commands are resolved, and the config loaded, before the group callback runs
        configure_logging()
        return super().make_context(info_name, args, parent=parent, **extra)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        command = super().get_command(ctx, cmd_name)
        if command is not None:
            return command
        graph = _graph_for(ctx)
        if graph is None:
            return None
        component = graph.component(cmd_name)
        if component is None:
            return None
        return _component_command(component.name, f"Run only the {component.name} component.")

    def format_commands(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        super().format_commands(ctx, formatter)
        graph = _graph_for(ctx)
        if graph is None or not graph.components:
            return
        rows = []
        for component in graph.components:
            tags = ", ".join(sorted(component.tags))
            rows.append((component.name, f"Run {component.name}" + (f" [{tags}]" if tags else "")))
        with formatter.section(f"Components ({graph.name})"):
            formatter.write_dl(rows)


TAGS_HELP = "Limit the operation to components with any of these tags."


@click.group(
    cls=StackGroup,
    invoke_without_command=True,
    help="Run every component of a development stack with one command.",
)
@click.option(
    "-c",
    "--config",
    "config_name",
    default=settings.CONFIG_FILE_NAME,
    show_default=True,
    is_eager=True,
    metavar="FILE",
    help="Config file, searched for from the current directory upward.",
)
@click.option("-t", "--tags", default=None, metavar="TAG1,TAG2", help=TAGS_HELP)
@click.option(
    "--stop-on",
    type=click.Choice([condition.value for condition in StopCondition]),
    default=None,
    help="Drain the stack when any component exits, or only when one fails.",
)
@click.option(
    "--grace-period",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    metavar="SECONDS",
    help="Time a component gets to exit after SIGTERM before it is killed.",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log conductor's own activity to stderr.")
@click.version_option(__version__, prog_name="conductor")
@click.pass_context
def cli(
    ctx: click.Context,
    config_name: str,
    tags: str | None,
    stop_on: str | None,
    grace_period: float | None,
    verbose: bool,
) -> None:
    configure_logging(verbose)
    ctx.obj = Invocation(
        config_name=config_name,
        tags=parse_tags(tags),
        stop_on=stop_on,
        grace_period=grace_period,
    )
    if ctx.invoked_subcommand is None:
        _run_mode(ctx.obj, tags=ctx.obj.tags)


def _alias(command: click.Command, name: str) -> click.Command:
    return click.Command(
        name,
        callback=command.callback,
        params=command.params,
        help=command.help,
        hidden=True,
    )


@cli.command(name="run")
@click.argument("component", required=False)
@click.option("-t", "--tags", default=None, metavar="TAG1,TAG2", help=TAGS_HELP)
@click.option("-g", "--group", default=None, help="Run the components of a group, with the group's env.")
@click.pass_obj
def run(invocation: Invocation, component: str | None, tags: str | None, group: str | None) -> None:
    """Launch the stack, or a single COMPONENT."""
    _run_mode(invocation, name=component, tags=parse_tags(tags) or invocation.tags, group=group)


@cli.command(name="setup")
@click.argument("component", required=False)
@click.option("-t", "--tags", default=None, metavar="TAG1,TAG2", help=TAGS_HELP)
@click.option("-g", "--group", default=None, help="Set up the components of a group.")
@click.pass_obj
def setup(invocation: Invocation, component: str | None, tags: str | None, group: str | None) -> None:
    """Clone repositories and run init steps."""
    _setup_mode(invocation, name=component, tags=parse_tags(tags) or invocation.tags, group=group)


@cli.command(name="list")
@click.option("-t", "--tags", default=None, metavar="TAG1,TAG2", help=TAGS_HELP)
@click.option("-g", "--group", default=None, help="List the components of a group.")
@click.option("--json", "json_output", is_flag=True, default=False, help="Output as JSON.")
@click.pass_obj
def list_components(invocation: Invocation, tags: str | None, group: str | None, json_output: bool) -> None:
    """Show the components a run would start."""
    try:
        graph, _root = invocation.project()
        components = select(graph, tags=parse_tags(tags) or invocation.tags, group=group)
    except ConductorError as error:
        _fail_with_message(error)

    if json_output:
        payload = [
            {
                "name": component.name,
                "tags": sorted(component.tags),
                "color": component.color,
                "start": str(component.start) if component.start else None,
                "repo": component.repo,
            }
            for component in components
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    if not components:
        click.echo("No components selected.")
        return

    click.secho(f"{'Component':<20}{'Tags':<30}Start", bold=True)
    for component in components:
        tags_display = ",".join(sorted(component.tags)) or "-"
        start_display = str(component.start) if component.start else "-"
        click.echo(f"{component.name:<20}{tags_display:<30}{start_display}")


for _name in ("start", "play"):
    cli.add_command(_alias(run, _name))
for _name in ("clone", "soundcheck"):
    cli.add_command(_alias(setup, _name))


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
