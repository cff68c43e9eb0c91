from __future__ import annotations

from asyncio import AbstractServer, StreamReader, StreamWriter, open_unix_connection, start_unix_server
from collections.abc import Callable
from datetime import datetime
from logging import Logger
from pathlib import Path
from typing import Annotated

from pydantic import Field

from machinehead.model import Model

SOCKET_FILE = Path("machinehead.sock")


class AlreadyRunning(Exception):
    pass


class Status(Model):
    started: datetime
    targets: Annotated[tuple[str, ...], Field(description="The URLs of the configured targets.")]
    watching: Annotated[bool, Field(description="Whether the target watcher is running.")]
    watching_self: Annotated[bool, Field(description="Whether the working repository is watched.")]


def socket_exists(path: Path = SOCKET_FILE) -> bool:
    return path.exists()


class StatusServer:
    def __init__(self, path: Path, status: Callable[[], Status], logger: Logger):
        self.path = path
        self.status = status
        self.logger = logger

        self.server: AbstractServer | None = None

    async def start(self) -> None:
        if socket_exists(self.path):
            raise AlreadyRunning(f"Socket {self.path} exists, machinehead is already running")

        self.server = await start_unix_server(self.handle, path=str(self.path))

        self.logger.debug(f"Listening for status requests on {self.path}")

    async def handle(self, reader: StreamReader, writer: StreamWriter) -> None:
        try:
            writer.write(self.status().model_dump_json().encode() + b"\n")
            await writer.drain()
        finally:
            writer.close()
            await writer.wait_closed()

    async def close(self) -> None:
        if self.server is None:
            return

        self.server.close()
        await self.server.wait_closed()
        self.server = None

        self.path.unlink(missing_ok=True)


async def query_status(path: Path = SOCKET_FILE) -> Status:
    reader, writer = await open_unix_connection(str(path))
    try:
        data = await reader.read()
    finally:
        writer.close()
        await writer.wait_closed()

    return Status.model_validate_json(data)
