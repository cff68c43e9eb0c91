from __future__ import annotations

import asyncio
from logging import Logger
from pathlib import Path
from time import monotonic

import typer.rich_utils as ru
from pydantic import ValidationError
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.style import Style
from rich.text import Text
from typer import Exit, Option, Typer
from yaml import YAMLError

from machinehead.config import CONFIG_FILE, Config
from machinehead.environment import SecretResolver, VaultClient, load_global_env
from machinehead.ipc import SOCKET_FILE, AlreadyRunning, query_status
from machinehead.log import make_logger
from machinehead.messages import Shutdown, Signalled
from machinehead.orchestrator import BootstrapError, Orchestrator

ru.STYLE_HELPTEXT = ""

cli = Typer(pretty_exceptions_enable=False, no_args_is_help=True)


@cli.command()
def run(
    config: Path = Option(
        default=CONFIG_FILE,
        show_default=True,
        envvar="MACHINEHEAD_CONFIG",
        help="The path to the configuration file. It is watched for changes while running.",
    ),
    socket: Path = Option(
        default=SOCKET_FILE,
        show_default=True,
        help="The path of the socket used to detect and query a running instance.",
    ),
    watch_self: bool = Option(
        default=True,
        help="If enabled, watch the git repository containing the working directory.",
    ),
    debug: bool = Option(
        default=False,
        envvar="DEBUG",
        help="If enabled, log at debug level.",
    ),
) -> None:
    start_time = monotonic()

    console = Console()

    parsed_config = load_config(config, console)

    logger = make_logger(console, debug=debug)

    logger.debug(f"Starting machinehead with config {parsed_config.model_dump_json(exclude={'vault_token'})}")

    try:
        shutdown = asyncio.run(serve(parsed_config, config, socket, watch_self, logger))
    except AlreadyRunning as e:
        console.print(Text(str(e), style=Style(color="red")))
        raise Exit(code=2)
    except (BootstrapError, FileNotFoundError) as e:
        logger.error(f"Daemon failed to initialise: {e}")
        raise Exit(code=1)
    except KeyboardInterrupt:
        raise Exit(code=0)
    finally:
        end_time = monotonic()

        console.print(Text(f"Finished in {end_time - start_time:.3f} seconds."))

    if isinstance(shutdown, Signalled):
        console.print(Text(f"Stopped by {shutdown.signal}."))


async def serve(config: Config, config_path: Path, socket: Path, watch_self: bool, logger: Logger) -> Shutdown:
    resolver = SecretResolver(
        global_env=load_global_env(config.env_file),
        store=(vault := VaultClient.from_config(config)),
        logger=logger,
    )

    orchestrator = Orchestrator(
        config=config,
        resolver=resolver,
        logger=logger,
        config_path=config_path,
        socket_path=socket,
        self_directory=Path.cwd() if watch_self else None,
    )

    try:
        return await orchestrator.run()
    finally:
        if vault is not None:
            await vault.aclose()


@cli.command()
def status(
    socket: Path = Option(
        default=SOCKET_FILE,
        show_default=True,
        help="The path of the socket of the running instance.",
    ),
) -> None:
    console = Console()

    try:
        report = asyncio.run(query_status(socket))
    except OSError as e:
        console.print(Text(f"machinehead is not running: {e}", style=Style(color="red")))
        raise Exit(code=1)

    console.print(Panel(JSON(report.model_dump_json()), title="Status", title_align="left"))


def load_config(path: Path, console: Console) -> Config:
    if not path.is_file():
        console.print(Text(f"Failed to find config file {path}", style=Style(color="red")))
        raise Exit(code=1)

    try:
        return Config.from_file(path)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(map(str, err["loc"]))
            msg = err["msg"]
            console.print(f"[red]ERROR[/red] {loc} -> {msg}")
        raise Exit(code=1)
    except (ValueError, YAMLError, NotImplementedError) as e:
        console.print(Text(f"Failed to load config file {path}: {e}", style=Style(color="red")))
        raise Exit(code=1)
