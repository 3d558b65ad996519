"""Component graph loaded from ``conductor.yml``.

The models are frozen: once the document is loaded nothing in a run changes
a component's command, tags or color.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

COLORS = ("blue", "green", "yellow", "purple", "white", "red", "cyan")
DEFAULT_COLOR = "yellow"


class StopCondition(str, Enum):
    """Which component exits bring the whole stack down."""

    ANY = "any"
    FAILURE = "failure"


def _stringify_env(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("env must be a mapping of variable names to values")
    env = {}
    for key, item in value.items():
        if isinstance(item, bool):
            item = "true" if item else "false"
        env[str(key)] = "" if item is None else str(item)
    return env


class CommandSpec(BaseModel):
    """An executable plus its arguments, exactly as they will be exec'd."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    dir: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _split_shorthand(cls, data: Any) -> Any:
        # `start: npm run dev` is shorthand for command + args
        if isinstance(data, str):
            parts = shlex.split(data)
            if not parts:
                raise ValueError("command must not be empty")
            return {"command": parts[0], "args": parts[1:]}
        return data

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _stringify_args(cls, value: Any) -> Any:
        if isinstance(value, list | tuple):
            return tuple(str(arg) for arg in value)
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _env(cls, value: Any) -> dict[str, str]:
        return _stringify_env(value)

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)


class Repository(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    path: str


class Component(BaseModel):
    """One named unit of the stack."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    tags: frozenset[str] = frozenset()
    color: str = DEFAULT_COLOR
    path: str | None = None
    repo: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    delay: float | None = Field(default=None, ge=0)
    start: CommandSpec | None = None
    init: tuple[CommandSpec, ...] = ()

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("component name must not be empty")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Any:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset(tag.strip() for tag in value.split(",") if tag.strip())
        return value

    @field_validator("color", mode="before")
    @classmethod
    def _color(cls, value: Any) -> str:
        if value is None:
            return DEFAULT_COLOR
        color = str(value).lower()
        if color not in COLORS:
            raise ValueError(f"unknown color {value!r}, expected one of: {', '.join(COLORS)}")
        return color

    @field_validator("env", mode="before")
    @classmethod
    def _env(cls, value: Any) -> dict[str, str]:
        return _stringify_env(value)

    @field_validator("init", mode="before")
    @classmethod
    def _init(cls, value: Any) -> Any:
        if value is None:
            return ()
        return value

    @property
    def directory(self) -> str:
        """Path of the component's source tree, relative to the project root."""
        return self.path or self.name

    @property
    def repository(self) -> Repository | None:
        if not self.repo:
            return None
        return Repository(url=self.repo, path=self.directory)

    def has_tag(self, tags: Iterable[str]) -> bool:
        return not self.tags.isdisjoint(tags)


class Group(BaseModel):
    """A named set of components run together with extra environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    components: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _env(cls, value: Any) -> dict[str, str]:
        return _stringify_env(value)


class ComponentGraph(BaseModel):
    """The whole parsed config document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "Unnamed Project"
    components: tuple[Component, ...] = ()
    groups: tuple[Group, ...] = ()
    stop_on: StopCondition = StopCondition.ANY
    grace_period: float | None = Field(default=None, gt=0)

    @field_validator("components", "groups", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        if value is None:
            return ()
        return value

    @model_validator(mode="after")
    def _check_names(self) -> ComponentGraph:
        seen: set[str] = set()
        for component in self.components:
            if component.name in seen:
                raise ValueError(f"duplicate component name {component.name!r}")
            seen.add(component.name)

        group_names: set[str] = set()
        for group in self.groups:
            if group.name in group_names:
                raise ValueError(f"duplicate group name {group.name!r}")
            group_names.add(group.name)
            missing = [name for name in group.components if name not in seen]
            if missing:
                raise ValueError(f"group {group.name!r} references unknown components: {', '.join(missing)}")
        return self

    @property
    def names(self) -> list[str]:
        return [component.name for component in self.components]

    def component(self, name: str) -> Component | None:
        return next((c for c in self.components if c.name == name), None)

    def group(self, name: str) -> Group | None:
        return next((g for g in self.groups if g.name == name), None)
