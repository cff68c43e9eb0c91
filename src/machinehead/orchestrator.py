from __future__ import annotations

import signal
from asyncio import FIRST_COMPLETED, Queue, Task, create_task, gather, get_running_loop, wait
from collections.abc import Awaitable, Callable
from datetime import datetime
from logging import Logger
from pathlib import Path
from typing import Optional, TypeVar

from typing_extensions import assert_never
from watchfiles import awatch
from yaml import YAMLError

from machinehead.config import CONFIG_FILE, Config, Target
from machinehead.environment import SecretResolver, SecretStoreError
from machinehead.execution import Execution, ExecutionFailed, execute
from machinehead.gitwatch import (
    MAX_PENDING_EVENTS,
    WatchError,
    WatchSession,
    origin_url,
    repository_path,
    ssh_environment,
)
from machinehead.ipc import SOCKET_FILE, Status, StatusServer
from machinehead.messages import (
    ConfigChanged,
    ConfigWatchFailed,
    ControlMessage,
    Quit,
    SelfRepoChanged,
    SelfWatchFailed,
    Shutdown,
    Signalled,
    TargetChanged,
    TargetWatchFailed,
    WatchEvent,
)

T = TypeVar("T")

Executor = Callable[..., Awaitable[Optional[Execution]]]

SIGNALS = (signal.SIGINT, signal.SIGTERM)
SELF_CACHE = ".self"

# read once at startup to build the secret resolver
RESOLVER_FIELDS = ("env_file", "vault_address", "vault_token", "vault_namespace")


class BootstrapError(Exception):
    pass


class Orchestrator:
    def __init__(
        self,
        config: Config,
        resolver: SecretResolver,
        logger: Logger,
        config_path: Path = CONFIG_FILE,
        socket_path: Path = SOCKET_FILE,
        self_directory: Optional[Path] = None,
        execute: Executor = execute,
        handle_signals: bool = True,
        max_pending: int = MAX_PENDING_EVENTS,
    ):
        self.config = config
        self.resolver = resolver
        self.logger = logger
        self.config_path = config_path
        self.self_directory = self_directory
        self.execute = execute
        self.handle_signals = handle_signals
        self.max_pending = max_pending

        self.inbox: Queue[ControlMessage] = Queue()

        self.watcher: WatchSession | None = None
        self.watcher_pumps: list[Task[None]] = []
        self.self_watcher: WatchSession | None = None
        self.sources: list[Task[None]] = []
        self.git_env: dict[str, str] = {}

        self.ipc = StatusServer(path=socket_path, status=self.status, logger=logger)
        self.started = datetime.now()
        self.signals_installed = False
        self.shut_down = False

    async def run(self) -> Shutdown:
        await self.ipc.start()

        try:
            await self.bootstrap()
        except BaseException:
            await self.stop_sources()
            raise

        try:
            await self.start_sources()

            self.logger.debug("Starting background daemon")

            return await self.handle_messages()
        finally:
            await self.shutdown()

    def cancel(self) -> None:
        self.inbox.put_nowait(Quit())

    async def handle_messages(self) -> Shutdown:
        while True:
            message = await self.inbox.get()
            try:
                shutdown = await self.handle(message)
            finally:
                self.inbox.task_done()

            if shutdown is not None:
                return shutdown

    async def handle(self, message: ControlMessage) -> Shutdown | None:
        match message:
            case Quit():
                self.logger.debug("Application internally terminated")
                return message

            case Signalled(signal=sig):
                self.logger.info(f"Received {sig}, shutting down")
                return message

            case TargetWatchFailed(error=error):
                self.logger.error(f"Git watcher encountered an error: {error}")

            case ConfigWatchFailed(error=error):
                self.logger.error(f"Config watcher encountered an error: {error}")

            case SelfWatchFailed(error=error):
                self.logger.error(f"Self repo watcher encountered an error: {error}")

            case ConfigChanged():
                await self.reload()

            case SelfRepoChanged(event=event):
                self.logger.info(
                    f"Working repository that contains the config was updated: {event.url} at {event.timestamp}"
                )

            case TargetChanged(event=event):
                await self.dispatch(event)

            case never:
                assert_never(never)

        return None

    async def bootstrap(self) -> None:
        try:
            self.git_env = ssh_environment(self.config.ssh_key)
        except WatchError as e:
            raise BootstrapError(str(e)) from e

        self.watcher = self.watch_targets(self.config)

        await self.wait_for_initial_scan(self.watcher)

        initial: dict[str, WatchEvent] = {}
        for event in self.watcher.drain():
            if (target := self.target_for(event)) is not None:
                initial[target.url] = event

        for target in self.config.targets:
            event = initial.get(target.url)
            if event is None and not target.initial_run:
                continue

            path = event.path if event is not None else self.path_for(target)
            if path is None:
                continue

            await self.run_target(target, path)

    async def wait_for_initial_scan(self, session: WatchSession) -> None:
        done = create_task(session.initial_done.wait())
        failed = create_task(session.errors.get())

        finished, pending = await wait({done, failed}, return_when=FIRST_COMPLETED)

        for task in pending:
            task.cancel()
        await gather(*pending, return_exceptions=True)

        if failed not in finished:
            return

        error = failed.result()
        if done in finished:
            # the initial scan completed, the failure belongs to a later tick
            session.errors.put_nowait(error)
            return

        raise BootstrapError(f"Failed to bootstrap repositories: {error}") from error

    def watch_targets(self, config: Config) -> WatchSession:
        session = WatchSession(
            repositories=config.repositories,
            interval=config.check_interval,
            cache_directory=config.cache_directory,
            initial_event=True,
            logger=self.logger,
            env=self.git_env,
            max_pending=self.max_pending,
        )
        session.start()
        return session

    async def start_sources(self) -> None:
        if self.watcher is not None:
            self.watcher_pumps = self.forward_session(
                self.watcher,
                changed=lambda e: TargetChanged(event=e),
                failed=lambda e: TargetWatchFailed(error=str(e)),
            )

        self.sources.append(create_task(self.watch_config(), name="Watch config file"))

        await self.start_self_watcher()

        if self.handle_signals:
            loop = get_running_loop()
            for sig in SIGNALS:
                loop.add_signal_handler(sig, lambda s=sig: self.inbox.put_nowait(Signalled(signal=s.name)))
            self.signals_installed = True

    async def start_self_watcher(self) -> None:
        if self.self_directory is None:
            return

        url = await origin_url(self.self_directory)
        if url is None:
            self.logger.warning(
                f"{self.self_directory} is not a git repository with an origin remote, not watching it"
            )
            return

        self.self_watcher = WatchSession(
            repositories=(url,),
            interval=self.config.check_interval,
            cache_directory=self.config.cache_directory / SELF_CACHE,
            initial_event=False,
            logger=self.logger,
            env=self.git_env,
        )
        self.self_watcher.start()
        self.sources.extend(
            self.forward_session(
                self.self_watcher,
                changed=lambda e: SelfRepoChanged(event=e),
                failed=lambda e: SelfWatchFailed(error=str(e)),
            )
        )

    def forward(self, queue: Queue[T], wrap: Callable[[T], ControlMessage], name: str) -> Task[None]:
        async def pump() -> None:
            while True:
                self.inbox.put_nowait(wrap(await queue.get()))
                # the rest stays in the bounded session queue until the inbox is handled
                await self.inbox.join()

        return create_task(pump(), name=name)

    def forward_session(
        self,
        session: WatchSession,
        changed: Callable[[WatchEvent], ControlMessage],
        failed: Callable[[Exception], ControlMessage],
    ) -> list[Task[None]]:
        name = ", ".join(session.repositories)
        return [
            self.forward(session.events, changed, name=f"Forward events for {name}"),
            self.forward(session.errors, failed, name=f"Forward errors for {name}"),
        ]

    async def watch_config(self) -> None:
        path = self.config_path.resolve()

        try:
            async for changes in awatch(
                path.parent,
                watch_filter=lambda change, p: Path(p).name == path.name,
                recursive=False,
            ):
                self.inbox.put_nowait(ConfigChanged(changes=changes))
        except Exception as e:
            self.inbox.put_nowait(ConfigWatchFailed(error=str(e)))

    async def reload(self) -> None:
        self.logger.info(f"{self.config_path} changed, re-creating git watcher")

        await self.stop_watcher()

        try:
            config = Config.from_file(self.config_path)
            self.git_env = ssh_environment(config.ssh_key)
        except (OSError, ValueError, YAMLError, NotImplementedError, WatchError) as e:
            self.logger.error(f"Failed to re-create git watcher with new config, no targets are being watched: {e}")
            return

        ignored = sorted(
            field for field in RESOLVER_FIELDS if getattr(config, field) != getattr(self.config, field)
        )
        if ignored:
            self.logger.warning(
                f"Changes to {', '.join(ignored)} are not applied until machinehead is restarted"
            )

        self.config = config
        self.watcher = self.watch_targets(config)
        self.watcher_pumps = self.forward_session(
            self.watcher,
            changed=lambda e: TargetChanged(event=e),
            failed=lambda e: TargetWatchFailed(error=str(e)),
        )

    async def stop_watcher(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()

        for pump in self.watcher_pumps:
            pump.cancel()
        await gather(*self.watcher_pumps, return_exceptions=True)
        self.watcher_pumps = []

        if self.watcher is not None:
            # changes that were already pulled would never be seen again
            for event in self.watcher.drain():
                self.inbox.put_nowait(TargetChanged(event=event))
            while not self.watcher.errors.empty():
                self.inbox.put_nowait(TargetWatchFailed(error=str(self.watcher.errors.get_nowait())))

            self.watcher = None

    async def stop_sources(self) -> None:
        if self.signals_installed:
            loop = get_running_loop()
            for sig in SIGNALS:
                loop.remove_signal_handler(sig)
            self.signals_installed = False

        if self.self_watcher is not None:
            await self.self_watcher.stop()
            self.self_watcher = None

        for source in self.sources:
            source.cancel()
        await gather(*self.sources, return_exceptions=True)
        self.sources = []

        await self.stop_watcher()

        await self.ipc.close()

    async def shutdown(self) -> None:
        if self.shut_down:
            return
        self.shut_down = True

        await self.stop_sources()

        for target in self.config.targets:
            path = self.path_for(target)
            if path is None:
                continue

            if await self.run_target(target, path, shutdown=True):
                self.logger.info(f"Shut down deployment {target}")

    async def dispatch(self, event: WatchEvent) -> None:
        target = self.target_for(event)
        if target is None:
            self.logger.warning(f"Received an event for {event.url}, which is not a configured target")
            return

        self.logger.info(f"New commit in {target} at {event.timestamp}, path {event.path}")

        await self.run_target(target, event.path)

    async def run_target(self, target: Target, path: Path, shutdown: bool = False) -> bool:
        try:
            env = await self.resolver.resolve(path)
        except SecretStoreError as e:
            self.logger.error(f"Failed to get secrets for {target}: {e}")
            return False

        try:
            execution = await self.execute(target, path, env, logger=self.logger, shutdown=shutdown)
        except ExecutionFailed as e:
            self.logger.error(f"Failed to execute command for {target}: {e}")
            return False

        if execution is None:
            return False

        self.logger.info(
            f"{' '.join(execution.command)} for {target} finished in {execution.duration.total_seconds():.3f} seconds"
        )
        return True

    def path_for(self, target: Target) -> Path | None:
        try:
            return repository_path(self.config.cache_directory, target.url)
        except WatchError as e:
            self.logger.error(f"Failed to get cached repository path for {target}: {e}")
            return None

    def target_for(self, event: WatchEvent) -> Target | None:
        for target in self.config.targets:
            if target.url == event.url:
                return target

        # local clones record the origin as an absolute path
        for target in self.config.targets:
            path = self.path_for(target)
            if path is not None and path.resolve() == event.path.resolve():
                return target

        return None

    def status(self) -> Status:
        return Status(
            started=self.started,
            targets=self.config.repositories,
            watching=self.watcher is not None and self.watcher.running,
            watching_self=self.self_watcher is not None and self.self_watcher.running,
        )
