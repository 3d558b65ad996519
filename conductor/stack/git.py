"""Repository acquisition for the setup pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit, urlunsplit

import structlog

from .errors import AcquisitionFailure
from .supervisor import describe_launch_error, run_attached

if TYPE_CHECKING:
    from .context import StackContext
    from .models import Component
    from .multiplexer import OutputMultiplexer

logger = structlog.get_logger(__name__)


def credentialed_url(url: str, env: Mapping[str, str]) -> str:
    """Embed ``GIT_USER``/``GIT_PAT`` into an https URL that has no userinfo."""
    user = env.get("GIT_USER", "")
    token = env.get("GIT_PAT", "")
    parts = urlsplit(url)
    if parts.scheme != "https" or not (user or token) or "@" in parts.netloc:
        return url
    userinfo = quote(user, safe="")
    if token:
        userinfo = f"{userinfo}:{quote(token, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{parts.netloc}"))


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or "@" not in parts.netloc:
        return url
    return urlunsplit(parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]))


def same_remote(left: str, right: str) -> bool:
    """Compare remotes ignoring credentials, trailing slashes and ``.git``."""

    def normalize(url: str) -> str:
        return redact_url(url.strip()).rstrip("/").removesuffix(".git")

    return normalize(left) == normalize(right)


async def read_origin(path: Path, *, git: str = "git") -> str | None:
    """The ``origin`` URL of the working tree at ``path``, if it is one."""
    if not (path / ".git").exists():
        return None
    process = await asyncio.create_subprocess_exec(
        git,
        "-C",
        str(path),
        "config",
        "--get",
        "remote.origin.url",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await process.communicate()
    if process.returncode != 0:
        return None
    return stdout.decode().strip() or None


class RepositoryAcquirer:
    """Clone a component's repository unless its tree is already there."""

    def __init__(self, context: StackContext, multiplexer: OutputMultiplexer, *, git: str = "git") -> None:
        self.context = context
        self.multiplexer = multiplexer
        self.git = git

    async def acquire(self, component: Component) -> bool:
        """Return True if a clone happened, False if the tree was already present."""
        repository = component.repository
        if repository is None:
            return False

        target = self.context.working_dir(component)
        shown_url = redact_url(repository.url)

        try:
            is_file = target.exists() and not target.is_dir()
            occupied = not is_file and target.is_dir() and any(target.iterdir())
        except OSError as error:
            raise AcquisitionFailure(
                f"could not inspect {target}: {error.strerror or error}", component=component.name
            ) from error
        if is_file:
            raise AcquisitionFailure(f"{target} exists and is not a directory", component=component.name)
        if occupied:
            try:
                origin = await read_origin(target, git=self.git)
            except OSError as error:
                raise AcquisitionFailure(f"could not run {self.git}: {error}", component=component.name) from error
            if origin is not None and same_remote(origin, repository.url):
                logger.info("repository_present", component=component.name, path=str(target))
                return False
            raise AcquisitionFailure(
                f"Directory already exists at {target} and is not a clone of {shown_url}",
                component=component.name,
            )

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise AcquisitionFailure(
                f"could not create {target.parent}: {error.strerror or error}", component=component.name
            ) from error
        env = self.context.environment(component)
        env["GIT_TERMINAL_PROMPT"] = "0"
        argv = [self.git, "clone", credentialed_url(repository.url, env), str(target)]

        self.multiplexer.system(f"Cloning {component.name} from {shown_url} into {target}")
        try:
            status = await run_attached(
                component,
                argv,
                cwd=target.parent,
                env=env,
                multiplexer=self.multiplexer,
                reader_timeout=self.context.grace_period,
            )
        except OSError as error:
            raise AcquisitionFailure(
                describe_launch_error(argv, target.parent, error), component=component.name
            ) from error
        if status.returncode != 0:
            raise AcquisitionFailure(
                f"Could not clone repository {shown_url}: git {status.describe()}", component=component.name
            )
        logger.info("repository_cloned", component=component.name, path=str(target))
        return True
