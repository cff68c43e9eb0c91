from __future__ import annotations

import logging
import os
import subprocess
from asyncio import sleep
from collections.abc import Callable
from pathlib import Path
from time import monotonic, time

import pytest

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(*args: str, cwd: Path, timestamp: int | None = None) -> str:
    env = os.environ | GIT_IDENTITY
    if timestamp is not None:
        env |= {
            "GIT_AUTHOR_DATE": f"@{timestamp} +0000",
            "GIT_COMMITTER_DATE": f"@{timestamp} +0000",
        }

    return subprocess.run(
        ("git", "-c", "commit.gpgsign=false", *args),
        cwd=cwd,
        env=env,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


def make_repo(path: Path, contents: str = "hello world", timestamp: int | None = None) -> Path:
    path.mkdir(parents=True)
    git("init", "--quiet", cwd=path)
    commit(path, contents, timestamp=timestamp)
    return path


def commit(path: Path, contents: str, timestamp: int | None = None) -> int:
    ts = timestamp if timestamp is not None else int(time())

    (path / "file").write_text(contents)
    git("add", "file", cwd=path)
    git("commit", "--quiet", "-m", f"add: {contents}", cwd=path, timestamp=ts)

    return ts


async def eventually(predicate: Callable[[], bool], timeout: float = 10) -> None:
    deadline = monotonic() + timeout
    while not predicate():
        if monotonic() > deadline:
            raise AssertionError("Condition was not met in time")
        await sleep(0.05)


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("tests")


@pytest.fixture
def remotes(tmp_path: Path) -> Path:
    return tmp_path / "local"


@pytest.fixture
def cache(tmp_path: Path) -> Path:
    return tmp_path / "cache"
