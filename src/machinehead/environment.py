from __future__ import annotations

from collections.abc import Mapping
from logging import Logger
from pathlib import Path
from types import TracebackType
from typing import Optional, Protocol, Type

import httpx
from dotenv import dotenv_values

from machinehead.config import Config


class SecretStoreError(Exception):
    pass


class SecretStore(Protocol):
    async def list(self, name: str) -> Mapping[str, object] | None: ...


class VaultClient:
    def __init__(
        self,
        address: str,
        token: Optional[str] = None,
        namespace: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {}
        if token:
            headers["X-Vault-Token"] = token
        if namespace:
            headers["X-Vault-Namespace"] = namespace

        self.client = httpx.AsyncClient(
            base_url=address.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> VaultClient | None:
        if not config.vault_address:
            return None

        return cls(
            address=config.vault_address,
            token=config.vault_token,
            namespace=config.vault_namespace,
        )

    async def __aenter__(self) -> VaultClient:
        return self

    async def __aexit__(
        self,
        exc_type: Type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def list(self, name: str) -> Mapping[str, object] | None:
        try:
            response = await self.client.request("LIST", f"/v1/{name.strip('/')}")
        except httpx.HTTPError as e:
            raise SecretStoreError(f"Failed to list secrets for {name!r}: {e}") from e

        if response.status_code == httpx.codes.NOT_FOUND:
            return None

        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise SecretStoreError(f"Failed to list secrets for {name!r}: {e}") from e

        if not isinstance(body, dict):
            raise SecretStoreError(f"Failed to list secrets for {name!r}: expected an object, got {body!r}")

        data = body.get("data")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise SecretStoreError(
                f"Failed to list secrets for {name!r}: expected data to be an object, got {data!r}"
            )

        return data


def load_global_env(env_file: Path | None) -> dict[str, str]:
    if env_file is None:
        return {}

    if not env_file.is_file():
        raise FileNotFoundError(f"Global environment file {env_file} does not exist")

    return {k: v for k, v in dotenv_values(env_file).items() if v is not None}


class SecretResolver:
    def __init__(
        self,
        global_env: Mapping[str, str],
        store: SecretStore | None,
        logger: Logger,
    ):
        self.global_env = dict(global_env)
        self.store = store
        self.logger = logger

    async def resolve(self, path: Path | str) -> dict[str, str]:
        env = dict(self.global_env)

        if self.store is None:
            return env

        project = Path(path).name
        secrets = await self.store.list(project)
        if secrets is None:
            self.logger.debug(f"No secrets stored for {project}")
            return env

        for key, value in secrets.items():
            if isinstance(value, str):
                env[key] = value

        return env
