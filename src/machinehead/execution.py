from __future__ import annotations

import os
from asyncio.subprocess import PIPE, STDOUT, create_subprocess_exec
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from logging import Logger
from pathlib import Path
from time import monotonic

from dotenv import set_key

from machinehead.config import Target

ENV_FILE = ".env"


class ExecutionFailed(Exception):
    def __init__(self, target: Target, command: tuple[str, ...], exit_code: int | None, output: str):
        self.target = target
        self.command = command
        self.exit_code = exit_code
        self.output = output

        status = f"exited with code {exit_code}" if exit_code is not None else "failed to start"
        super().__init__(f"{' '.join(command)} for {target} {status}: {output.strip()}")


@dataclass(frozen=True)
class Execution:
    target: Target
    command: tuple[str, ...]
    exit_code: int
    output: str
    duration: timedelta


def merge_env(target: Target, env: Mapping[str, str]) -> dict[str, str]:
    return dict(env) | target.env


def write_env_file(directory: Path, env: Mapping[str, str]) -> Path:
    path = directory / ENV_FILE
    path.write_text("")
    for key, value in sorted(env.items()):
        set_key(path, key, value, quote_mode="always")
    return path


async def execute(
    target: Target,
    directory: Path,
    env: Mapping[str, str],
    logger: Logger,
    shutdown: bool = False,
) -> Execution | None:
    command = target.shutdown_command if shutdown else target.command
    if not command:
        return None

    env = merge_env(target, env)

    if target.write_env:
        try:
            write_env_file(directory, env)
        except OSError as e:
            raise ExecutionFailed(target=target, command=command, exit_code=None, output=str(e)) from e

    logger.debug(f"Running {' '.join(command)} in {directory} for {target} with env keys {sorted(env)}")

    start_time = monotonic()

    try:
        process = await create_subprocess_exec(
            *command,
            cwd=directory,
            stdout=PIPE,
            stderr=STDOUT,
            env=os.environ | env,
        )
    except OSError as e:
        raise ExecutionFailed(target=target, command=command, exit_code=None, output=str(e)) from e

    stdout, _ = await process.communicate()
    output = stdout.decode("utf-8", errors="replace")

    if process.returncode != 0:
        raise ExecutionFailed(target=target, command=command, exit_code=process.returncode, output=output)

    return Execution(
        target=target,
        command=command,
        exit_code=process.returncode,
        output=output,
        duration=timedelta(seconds=monotonic() - start_time),
    )
