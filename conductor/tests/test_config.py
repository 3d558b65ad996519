"""Tests for config discovery, loading and the component models."""

from __future__ import annotations

from pathlib import Path

import pytest
from parameterized import parameterized
from pydantic import ValidationError

from conductor.core.config import find_config, load_graph, load_project
from conductor.stack.errors import ConfigError
from conductor.stack.models import CommandSpec, Component, ComponentGraph, StopCondition


class TestCommandSpec:
    """Test command descriptors."""

    def test_string_shorthand_is_split(self) -> None:
        spec = CommandSpec.model_validate("npm run 'dev server'")

        assert spec.command == "npm"
        assert spec.args == ("run", "dev server")
        assert spec.argv == ["npm", "run", "dev server"]

    def test_args_are_stringified(self) -> None:
        """YAML numbers in args reach the process as text."""
        spec = CommandSpec.model_validate({"command": "sleep", "args": [5]})

        assert spec.args == ("5",)

    def test_str_quotes_arguments(self) -> None:
        spec = CommandSpec(command="echo", args=("hello world",))

        assert str(spec) == "echo 'hello world'"

    @parameterized.expand([("",), ("   ",)])
    def test_blank_command_rejected(self, value: str) -> None:
        with pytest.raises(ValidationError):
            CommandSpec.model_validate(value)


class TestComponent:
    """Test component validation."""

    def test_defaults(self) -> None:
        component = Component(name="api")

        assert component.color == "yellow"
        assert component.tags == frozenset()
        assert component.start is None
        assert component.init == ()
        assert component.directory == "api"
        assert component.repository is None

    def test_comma_separated_tags(self) -> None:
        component = Component.model_validate({"name": "api", "tags": "backend, api"})

        assert component.tags == frozenset({"backend", "api"})

    def test_color_is_case_insensitive(self) -> None:
        component = Component.model_validate({"name": "api", "color": "Purple"})

        assert component.color == "purple"

    def test_unknown_color_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown color"):
            Component.model_validate({"name": "api", "color": "orange"})

    def test_env_values_become_strings(self) -> None:
        component = Component.model_validate({"name": "api", "env": {"PORT": 8000, "DEBUG": True, "EMPTY": None}})

        assert component.env == {"PORT": "8000", "DEBUG": "true", "EMPTY": ""}

    def test_repository_uses_path(self) -> None:
        component = Component(name="api", repo="https://example.com/api.git", path="services/api")

        assert component.repository is not None
        assert component.repository.path == "services/api"

    def test_models_are_frozen(self) -> None:
        component = Component(name="api")

        with pytest.raises(ValidationError):
            component.name = "web"  # type: ignore[misc]

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Component(name="api", delay=-1)


class TestComponentGraph:
    """Test document level validation."""

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate component name 'api'"):
            ComponentGraph.model_validate({"components": [{"name": "api"}, {"name": "api"}]})

    def test_group_with_unknown_component_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown components: ghost"):
            ComponentGraph.model_validate(
                {"components": [{"name": "api"}], "groups": [{"name": "g", "components": ["api", "ghost"]}]}
            )

    def test_unknown_keys_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ComponentGraph.model_validate({"components": [{"name": "api", "strat": "oops"}]})

    def test_lookup(self) -> None:
        graph = ComponentGraph.model_validate({"name": "shop", "components": [{"name": "api"}, {"name": "web"}]})

        assert graph.names == ["api", "web"]
        assert graph.component("web") is graph.components[1]
        assert graph.component("nope") is None
        assert graph.stop_on is StopCondition.ANY


class TestFindConfig:
    """Test config discovery."""

    def test_finds_config_in_parent_directory(self, tmp_path: Path) -> None:
        config = tmp_path / "conductor.yml"
        config.write_text("components: []\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert find_config("conductor.yml", nested) == config.resolve()

    def test_missing_config(self, tmp_path: Path) -> None:
        assert find_config("definitely-not-here.yml", tmp_path) is None

    def test_relative_path_is_not_searched(self, tmp_path: Path) -> None:
        """A name with a directory part is only looked for where it points."""
        (tmp_path / "deploy").mkdir()
        config = tmp_path / "deploy" / "stack.yml"
        config.write_text("components: []\n")
        nested = tmp_path / "deploy" / "inner"
        nested.mkdir()

        assert find_config("deploy/stack.yml", tmp_path) == config.resolve()
        assert find_config("deploy/stack.yml", nested) is None


class TestLoadGraph:
    """Test loading documents into a component graph."""

    def test_load_full_document(self, write_config) -> None:
        path = write_config(
            {
                "name": "shop",
                "stop_on": "failure",
                "grace_period": 2,
                "components": [
                    {
                        "name": "api",
                        "tags": ["backend"],
                        "color": "blue",
                        "repo": "https://example.com/api.git",
                        "init": ["pip install -r requirements.txt", {"command": "make", "args": ["migrate"]}],
                        "start": {"command": "python", "args": ["-m", "api"], "env": {"PORT": 8000}},
                    }
                ],
            }
        )

        graph = load_graph(path)

        api = graph.component("api")
        assert graph.name == "shop"
        assert graph.stop_on is StopCondition.FAILURE
        assert graph.grace_period == 2
        assert api is not None
        assert [str(step) for step in api.init] == ["pip install -r requirements.txt", "make migrate"]
        assert api.start is not None
        assert api.start.env == {"PORT": "8000"}

    def test_empty_document_is_empty_graph(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.yml"
        path.write_text("")

        assert load_graph(path).components == ()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.yml"
        path.write_text("components: [\n")

        with pytest.raises(ConfigError, match="Could not parse config file"):
            load_graph(path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.yml"
        path.write_text("- api\n- web\n")

        with pytest.raises(ConfigError, match="expected a mapping"):
            load_graph(path)

    def test_validation_errors_name_location(self, write_config) -> None:
        path = write_config({"components": [{"name": "api", "color": "orange"}]})

        with pytest.raises(ConfigError) as excinfo:
            load_graph(path)

        assert "components.0.color" in str(excinfo.value)

    def test_load_project_returns_root(self, write_config, tmp_path: Path) -> None:
        write_config({"components": [{"name": "api"}]})

        graph, root = load_project("conductor.yml", tmp_path)

        assert graph.names == ["api"]
        assert root == tmp_path.resolve()

    def test_load_project_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Could not find config file nope.yml"):
            load_project("nope.yml", tmp_path)
