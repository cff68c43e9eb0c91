from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator

from machinehead.model import Model
from machinehead.utils import parse_duration

CONFIG_FILE = Path("machinehead.json")

Command = tuple[str, ...]
Envs = dict[Annotated[str, Field(min_length=1)], str]


class Target(Model):
    name: Annotated[str, Field(description="An optional label for the target.")] = ""
    url: Annotated[
        str,
        Field(
            min_length=1,
            validation_alias=AliasChoices("url", "repo_url"),
            description="The repository to watch for changes: a remote URL or a local path.",
        ),
    ]
    command: Annotated[
        Command,
        Field(description="The command to run in the working copy on each new commit."),
    ]
    shutdown_command: Annotated[
        Command,
        Field(description="The command to run in the working copy during a graceful shutdown."),
    ] = ()
    env: Annotated[
        Envs,
        Field(
            description="Environment variables for this target. These take precedence over global and vault values; do not store credentials here!",
        ),
    ] = {}
    write_env: Annotated[
        bool,
        Field(description="Write the resolved environment to a .env file in the working copy."),
    ] = False
    initial_run: Annotated[
        bool,
        Field(description="Run the command once at startup, even if there is no new commit."),
    ] = True

    def __str__(self) -> str:
        return self.name or self.url


class Config(Model):
    targets: Annotated[
        tuple[Target, ...],
        Field(min_length=1, description="The repositories to watch."),
    ]
    check_interval: Annotated[
        timedelta,
        Field(description="The interval between checks for new commits, e.g. '1s' or '5m'."),
    ] = timedelta(seconds=1)
    cache_directory: Annotated[
        Path,
        Field(description="The directory that local clones are stored in."),
    ] = Path("./cache")
    env_file: Annotated[
        Optional[Path],
        Field(description="A dotenv file of environment variables applied to every target."),
    ] = None
    vault_address: Annotated[Optional[str], Field(description="The address of the Vault server.")] = None
    vault_token: Annotated[Optional[str], Field(description="The Vault token.")] = None
    vault_namespace: Annotated[Optional[str], Field(description="The Vault namespace.")] = None
    ssh_key: Annotated[
        Optional[Path],
        Field(description="A private key used for cloning and pulling over SSH."),
    ] = None

    @field_validator("check_interval", mode="before")
    @classmethod
    def parse_check_interval(cls, check_interval: object) -> object:
        if isinstance(check_interval, str):
            try:
                return parse_duration(check_interval)
            except ValueError:
                # fall back to pydantic, e.g. for ISO 8601 durations
                return check_interval
        return check_interval

    @field_validator("check_interval")
    @classmethod
    def check_interval_is_positive(cls, check_interval: timedelta) -> timedelta:
        if check_interval <= timedelta():
            raise ValueError("check_interval must be positive")
        return check_interval

    @model_validator(mode="after")
    def target_urls_are_unique(self) -> Config:
        seen = set()
        for target in self.targets:
            if target.url in seen:
                raise ValueError(f"Duplicate target url {target.url!r}")
            seen.add(target.url)
        return self

    @property
    def repositories(self) -> tuple[str, ...]:
        return tuple(t.url for t in self.targets)
