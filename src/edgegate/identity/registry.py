"""Read-only registry of confidential client secrets."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Iterator, Optional

from pydantic import SecretStr

from ..common.settings import GatewaySettings


class ClientSecretRegistry(Mapping[str, str]):
    """Maps a registered ``client_id`` to its confidential secret."""

    def __init__(self, secrets: Mapping[str, SecretStr | str]):
        self._secrets = {
            client_id: secret.get_secret_value() if isinstance(secret, SecretStr) else secret
            for client_id, secret in secrets.items()
        }

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "ClientSecretRegistry":
        return cls(settings.client_secrets)

    def __getitem__(self, client_id: str) -> str:
        return self._secrets[client_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._secrets)

    def __len__(self) -> int:
        return len(self._secrets)

    def lookup(self, client_id: object) -> Optional[str]:
        if not isinstance(client_id, str) or not client_id:
            return None
        return self._secrets.get(client_id) or None

    def __repr__(self) -> str:
        return f"ClientSecretRegistry(clients={sorted(self._secrets)!r})"
