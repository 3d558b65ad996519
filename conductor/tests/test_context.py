"""Tests for per-invocation context: environment and working directories."""

from __future__ import annotations

from pathlib import Path

from conftest import make_graph
from parameterized import parameterized

from conductor import settings
from conductor.stack.context import StackContext, expand_env
from conductor.stack.models import CommandSpec, StopCondition


class TestExpandEnv:
    """Test variable references in env values."""

    @parameterized.expand(
        [
            ("%HOME%/bin", "/home/dev/bin"),
            ("${HOME}/bin", "/home/dev/bin"),
            ("%MISSING%:${MISSING}", "%MISSING%:${MISSING}"),
            ("plain", "plain"),
        ]
    )
    def test_expand(self, value: str, expected: str) -> None:
        assert expand_env(value, {"HOME": "/home/dev"}) == expected


class TestStackContext:
    """Test how options and environment are resolved."""

    def test_option_precedence(self, tmp_path: Path) -> None:
        """Explicit arguments beat the document, which beats settings."""
        graph = make_graph({"name": "api"}, stop_on="failure", grace_period=3)

        from_document = StackContext.create(graph, tmp_path, environ={})
        explicit = StackContext.create(graph, tmp_path, grace_period=1.5, stop_on="any", environ={})
        defaults = StackContext.create(make_graph({"name": "api"}), tmp_path, environ={})

        assert from_document.grace_period == 3
        assert from_document.stop_on is StopCondition.FAILURE
        assert explicit.grace_period == 1.5
        assert explicit.stop_on is StopCondition.ANY
        assert defaults.grace_period == settings.GRACE_PERIOD

    def test_environment_layering(self, tmp_path: Path) -> None:
        """Inherited env, then the command's, then the component's, then the group's."""
        graph = make_graph(
            {"name": "api", "env": {"SHARED": "component", "API_ONLY": "yes"}},
            groups=[{"name": "ci", "components": ["api"], "env": {"SHARED": "group"}}],
        )
        command = CommandSpec(command="run", env={"SHARED": "command", "CMD_ONLY": "1", "PATH": "%PATH%:/opt/bin"})
        api = graph.components[0]

        plain = StackContext.create(graph, tmp_path, environ={"PATH": "/usr/bin", "SHARED": "inherited"})
        grouped = StackContext.create(graph, tmp_path, group="ci", environ={"PATH": "/usr/bin"})

        env = plain.environment(api, command)
        assert env["SHARED"] == "component"
        assert env["CMD_ONLY"] == "1"
        assert env["API_ONLY"] == "yes"
        assert env["PATH"] == "/usr/bin:/opt/bin"
        assert grouped.environment(api, command)["SHARED"] == "group"

    def test_environment_does_not_leak_between_calls(self, tmp_path: Path) -> None:
        graph = make_graph({"name": "api", "env": {"A": "1"}}, {"name": "web"})
        context = StackContext.create(graph, tmp_path, environ={})

        context.environment(graph.components[0])["B"] = "2"

        assert context.environment(graph.components[1]) == {}

    def test_working_dir(self, tmp_path: Path) -> None:
        graph = make_graph(
            {"name": "plain"},
            {"name": "cloned", "repo": "https://example.com/cloned.git"},
            {"name": "pathed", "path": "services/pathed"},
            {"name": "absolute", "path": str(tmp_path / "elsewhere")},
        )
        invoked_from = tmp_path / "somewhere"
        context = StackContext.create(graph, tmp_path, environ={}, invocation_dir=invoked_from)
        plain, cloned, pathed, absolute = graph.components

        assert context.working_dir(plain) == invoked_from
        assert context.working_dir(cloned) == tmp_path / "cloned"
        assert context.working_dir(pathed) == tmp_path / "services" / "pathed"
        assert context.working_dir(absolute) == tmp_path / "elsewhere"
        assert context.working_dir(plain, CommandSpec(command="make", dir="build")) == tmp_path / "build"

    def test_plain_component_runs_where_conductor_was_started(self, tmp_path: Path, monkeypatch) -> None:
        """Without repo or path, commands run in the invocation directory, not the config's."""
        nested = tmp_path / "src" / "app"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        graph = make_graph({"name": "plain"}, {"name": "pathed", "path": "services/pathed"})

        context = StackContext.create(graph, tmp_path, environ={})
        plain, pathed = graph.components

        assert context.working_dir(plain) == nested.resolve()
        assert context.working_dir(pathed) == tmp_path / "services" / "pathed"
        assert context.working_dir(plain, CommandSpec(command="make", dir="build")) == tmp_path / "build"
