"""
Clone a set of git repositories into a local cache directory and then
periodically pull them all, emitting a WatchEvent whenever HEAD moves.
"""

from __future__ import annotations

import os
from asyncio import Event, Queue, QueueEmpty, QueueFull, Task, TimeoutError, create_task, wait_for
from asyncio.subprocess import PIPE, create_subprocess_exec
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from logging import Logger
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from machinehead.messages import WatchEvent

MAX_PENDING_EVENTS = 64


class WatchError(Exception):
    pass


class WatchCancelled(Exception):
    pass


class GitError(WatchError):
    def __init__(self, args: Iterable[str], returncode: int, output: str):
        self.command = ("git", *args)
        self.returncode = returncode
        self.output = output

        super().__init__(f"{' '.join(self.command)} exited with code {returncode}: {output.strip()}")


def repository_path(cache_directory: Path, url: str) -> Path:
    """
    The local path of a cached clone: the last path segment of the URL
    under the cache directory. Pure, so it is stable across restarts.
    """
    path = urlparse(url).path or url
    if "://" not in url and ":" in path.split("/", 1)[0]:
        # scp-like syntax, e.g. git@github.com:owner/repo.git
        path = path.split(":", 1)[1]

    name = PurePosixPath(path.rstrip("/")).name
    if name in ("", ".", ".."):
        raise WatchError(f"Failed to get a repository name from {url!r}")

    return cache_directory / name


def ssh_environment(ssh_key: Path | None) -> dict[str, str]:
    if ssh_key is None:
        return {}

    if not ssh_key.is_file():
        raise WatchError(f"SSH key {ssh_key} does not exist")

    return {"GIT_SSH_COMMAND": f"ssh -i {ssh_key.resolve()} -o IdentitiesOnly=yes"}


async def git(*args: str, cwd: Path | None = None, env: Mapping[str, str] | None = None) -> str:
    process = await create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        stdout=PIPE,
        stderr=PIPE,
        env=os.environ | {"GIT_TERMINAL_PROMPT": "0"} | dict(env or {}),
    )
    stdout, stderr = await process.communicate()

    if process.returncode != 0:
        raise GitError(args, process.returncode or -1, (stdout + stderr).decode("utf-8", errors="replace"))

    return stdout.decode("utf-8").strip()


async def origin_url(directory: Path) -> str | None:
    """The origin URL of the repository containing the directory, if there is one."""
    try:
        return await git("remote", "get-url", "origin", cwd=directory)
    except (GitError, OSError):
        return None


class RepoWatcher:
    def __init__(
        self,
        cache_directory: Path,
        initial_event: bool,
        logger: Logger,
        env: Mapping[str, str] | None = None,
    ):
        self.cache_directory = cache_directory
        self.initial_event = initial_event
        self.logger = logger
        self.env = dict(env or {})

    async def git(self, *args: str, cwd: Path | None = None) -> str:
        return await git(*args, cwd=cwd, env=self.env)

    async def check(self, url: str) -> WatchEvent | None:
        path = repository_path(self.cache_directory, url)

        if not (path / ".git").exists():
            await self.clone(url, path)
            if self.initial_event:
                return await self.event_from_repo(path)
            return None

        return await self.event_from_changes(path)

    async def clone(self, url: str, path: Path) -> None:
        self.logger.info(f"Cloning {url} into {path}")

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self.git("clone", "--quiet", "--", url, str(path))
        except GitError as e:
            raise WatchError(f"Failed to clone initial copy of {url}: {e.output.strip()}") from e

    async def pull(self, path: Path) -> None:
        try:
            await self.git("pull", "--ff-only", "--quiet", cwd=path)
        except GitError as e:
            raise WatchError(f"Failed to pull local repo {path}: {e.output.strip()}") from e

    async def event_from_changes(self, path: Path) -> WatchEvent | None:
        before = await self.head(path)
        await self.pull(path)
        after = await self.head(path)

        if before == after:
            # already up to date
            return None

        self.logger.debug(f"{path} moved from {before[:8]} to {after[:8]}")

        return await self.event_from_repo(path)

    async def head(self, path: Path) -> str:
        try:
            return await self.git("rev-parse", "HEAD", cwd=path)
        except GitError as e:
            raise WatchError(f"Failed to get HEAD of {path}") from e

    async def event_from_repo(self, path: Path) -> WatchEvent:
        try:
            url = await self.git("remote", "get-url", "origin", cwd=path)
            root = await self.git("rev-parse", "--show-toplevel", cwd=path)
            author_time = await self.git("log", "-1", "--format=%at", "HEAD", cwd=path)
        except GitError as e:
            raise WatchError(f"Failed to read repository state of {path}: {e.output.strip()}") from e

        return WatchEvent(
            url=url,
            path=Path(root).resolve(),
            timestamp=datetime.fromtimestamp(int(author_time), tz=timezone.utc),
        )


class WatchSession:
    def __init__(
        self,
        repositories: Iterable[str],
        interval: timedelta,
        cache_directory: Path,
        initial_event: bool,
        logger: Logger,
        env: Mapping[str, str] | None = None,
        max_pending: int = MAX_PENDING_EVENTS,
    ):
        self.repositories = tuple(repositories)
        self.interval = interval
        self.cache_directory = cache_directory
        self.initial_event = initial_event
        self.logger = logger

        self.watcher = RepoWatcher(
            cache_directory=cache_directory,
            initial_event=initial_event,
            logger=logger,
            env=env,
        )

        self.events: Queue[WatchEvent] = Queue(maxsize=max_pending)
        self.errors: Queue[Exception] = Queue()
        self.initial_done = Event()

        self._closed = Event()
        self._task: Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        if self.initial_event:
            self.check_closed()
            await self.check_repositories()
            self.initial_done.set()

        while True:
            await self.tick()
            await self.check_repositories()

    async def tick(self) -> None:
        self.check_closed()
        try:
            await wait_for(self._closed.wait(), timeout=self.interval.total_seconds())
        except TimeoutError:
            return
        self.check_closed()

    def check_closed(self) -> None:
        if self.closed:
            raise WatchCancelled(f"Watch session for {', '.join(self.repositories)} was closed")

    async def check_repositories(self) -> None:
        for url in self.repositories:
            event = await self.watcher.check(url)
            if event is not None:
                self.deliver(event)

    def deliver(self, event: WatchEvent) -> None:
        try:
            self.events.put_nowait(event)
        except QueueFull:
            dropped = self.events.get_nowait()
            self.logger.warning(
                f"Too many pending events, dropping event for {dropped.url} at {dropped.timestamp}"
            )
            self.events.put_nowait(event)

    def start(self) -> Task[None]:
        if self._task is None:
            self._task = create_task(self._supervise(), name=f"Watch {', '.join(self.repositories)}")
        return self._task

    async def _supervise(self) -> None:
        try:
            await self.run()
        except WatchCancelled:
            self.logger.debug(f"Watch session for {', '.join(self.repositories)} closed")
        except Exception as e:
            self.logger.debug(f"Watch session for {', '.join(self.repositories)} failed: {e}")
            self.errors.put_nowait(e)

    def close(self) -> None:
        self._closed.set()

    async def stop(self) -> None:
        self.close()
        if self._task is not None:
            await self._task

    def drain(self) -> list[WatchEvent]:
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except QueueEmpty:
                return events
