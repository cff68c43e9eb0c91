from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Union

from pydantic import Field
from watchfiles import Change

from machinehead.model import Model


class WatchEvent(Model):
    url: str
    path: Path
    timestamp: datetime


class Message(Model):
    timestamp: datetime = Field(default_factory=datetime.now)


class TargetChanged(Message):
    event: WatchEvent


class TargetWatchFailed(Message):
    error: str


class SelfRepoChanged(Message):
    event: WatchEvent


class SelfWatchFailed(Message):
    error: str


class ConfigChanged(Message):
    changes: set[tuple[Change, str]] = set()


class ConfigWatchFailed(Message):
    error: str


class Signalled(Message):
    signal: str


class Quit(Message):
    pass


ControlMessage = Union[
    TargetChanged,
    TargetWatchFailed,
    SelfRepoChanged,
    SelfWatchFailed,
    ConfigChanged,
    ConfigWatchFailed,
    Signalled,
    Quit,
]

Shutdown = Union[Signalled, Quit]
