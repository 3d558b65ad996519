"""Config document discovery and loading."""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from conductor.stack.errors import ConfigError
from conductor.stack.models import ComponentGraph

logger = structlog.get_logger(__name__)


def find_config(filename: str, start: Path | None = None) -> Path | None:
    """Find ``filename`` in ``start`` or the closest parent directory that has it.

    A name with a directory part (``deploy/conductor.yml``, an absolute path)
    is taken as given relative to ``start`` instead of being searched for.
    """
    start = (start or Path.cwd()).resolve()
    candidate = Path(filename).expanduser()
    if candidate.is_absolute() or len(candidate.parts) > 1:
        path = candidate if candidate.is_absolute() else start / candidate
        return path if path.is_file() else None

    for directory in (start, *start.parents):
        path = directory / filename
        if path.is_file():
            return path
    return None


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "document"
        lines.append(f"  {location}: {detail['msg']}")
    return "\n".join(lines)


def load_graph(path: Path) -> ComponentGraph:
    """Parse and validate a config document."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as error:
        raise ConfigError(f"Could not read config file {path}: {error.strerror or error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Could not parse config file {path}: {error}") from error

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping at the top level")

    try:
        graph = ComponentGraph.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid config file {path}:\n{_format_validation_error(error)}") from error

    logger.debug("config_loaded", path=str(path), components=graph.names)
    return graph


def load_project(filename: str, start: Path | None = None) -> tuple[ComponentGraph, Path]:
    """Locate and load the config; returns the graph and the project root."""
    path = find_config(filename, start)
    if path is None:
        raise ConfigError(f"Could not find config file {filename}")
    return load_graph(path), path.parent
