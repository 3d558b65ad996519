from __future__ import annotations

from collections.abc import Iterable

from .errors import NotFound
from .models import Component, ComponentGraph


def select(
    graph: ComponentGraph,
    name: str | None = None,
    tags: Iterable[str] | None = None,
    group: str | None = None,
) -> list[Component]:
    """Pick the components an invocation acts on, in declaration order.

    An explicit name wins over a group, which wins over tags. Tags that match
    nothing give an empty selection rather than an error.
    """
    if name:
        component = graph.component(name)
        if component is None:
            raise NotFound(f"No component named {name!r} in {graph.name}")
        return [component]

    if group:
        found = graph.group(group)
        if found is None:
            raise NotFound(f"No group named {group!r} in {graph.name}")
        members = set(found.components)
        return [c for c in graph.components if c.name in members]

    wanted = {tag for tag in (tags or []) if tag}
    if wanted:
        return [c for c in graph.components if c.has_tag(wanted)]

    return list(graph.components)


def parse_tags(value: str | None) -> list[str]:
    """Split a ``--tags=web,api`` value."""
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]
