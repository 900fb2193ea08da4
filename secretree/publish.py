"""Destinations that decrypted or encrypted documents can be published to."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Mapping

import requests

__all__ = [
    "DEFAULT_VAULT_ADDRESS",
    "Destination",
    "NotImplementedDestinationError",
    "VaultDestination",
]

_log = logging.getLogger(__name__)

# Address used when neither the destination nor VAULT_ADDR names one.
DEFAULT_VAULT_ADDRESS = "https://127.0.0.1:8200"

_REQUEST_TIMEOUT = 60


class NotImplementedDestinationError(NotImplementedError):
    """The destination does not support the requested kind of upload."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"NotImplementedError: {self.message}"


class Destination(ABC):
    """A place that documents can be uploaded to."""

    @abstractmethod
    def upload(self, file_contents: bytes, file_name: str) -> None:
        """Upload an encrypted file's contents under file_name."""

    @abstractmethod
    def upload_unencrypted(self, data: Mapping[str, Any], file_name: str) -> None:
        """Upload a decrypted document, as a mapping, under file_name."""

    @abstractmethod
    def path(self, file_name: str) -> str:
        """Return where file_name ends up in this destination."""


class VaultDestination(Destination):
    """A key/value secrets engine of a Vault server."""

    def __init__(
        self,
        vault_address: str = "",
        vault_path: str = "",
        kv_mount_name: str = "",
        kv_version: int = 2,
    ) -> None:
        if not vault_path.endswith("/"):
            vault_path += "/"
        if not kv_mount_name:
            kv_mount_name = "secret/"
        if not kv_mount_name.endswith("/"):
            kv_mount_name += "/"
        if kv_version not in (1, 2):
            kv_version = 2
        self.vault_address = vault_address
        self.vault_path = vault_path
        self.kv_mount_name = kv_mount_name
        self.kv_version = kv_version

    def __repr__(self) -> str:
        return (
            f"VaultDestination(vault_address={self.vault_address!r}, "
            f"vault_path={self.vault_path!r}, kv_mount_name={self.kv_mount_name!r}, "
            f"kv_version={self.kv_version!r})"
        )

    def _address(self) -> str:
        if self.vault_address:
            return self.vault_address
        return os.environ.get("VAULT_ADDR") or DEFAULT_VAULT_ADDRESS

    def _secrets_path(self, file_name: str) -> str:
        if self.kv_version == 1:
            return f"{self.kv_mount_name}{self.vault_path}{file_name}"
        return f"{self.kv_mount_name}data/{self.vault_path}{file_name}"

    def _url(self, secrets_path: str) -> str:
        return f"{self._address().rstrip('/')}/v1/{secrets_path}"

    def path(self, file_name: str) -> str:
        """Return the URL of the secret that file_name is written to."""
        return f"{self._address()}/v1/{self._secrets_path(file_name)}"

    def upload(self, file_contents: bytes, file_name: str) -> None:
        """Refuse the upload: Vault only takes decrypted documents."""
        _log.debug(
            "Refusing to upload %d encrypted bytes to %s",
            len(file_contents),
            self._secrets_path(file_name),
        )
        raise NotImplementedDestinationError(
            "Vault does not support uploading encrypted sops files directly."
        )

    def _read_existing(self, session: requests.Session, secrets_path: str) -> Any:
        try:
            response = session.get(self._url(secrets_path), timeout=_REQUEST_TIMEOUT)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError):
            _log.warning(
                "Cannot check if destination secret already exists in %s. New version "
                "will be created even if the data has not been changed.",
                secrets_path,
            )
            return None

    def upload_unencrypted(self, data: Mapping[str, Any], file_name: str) -> None:
        """Write data as a secret, unless the stored secret already equals it."""
        secrets_path = self._secrets_path(file_name)
        with requests.Session() as session:
            token = os.environ.get("VAULT_TOKEN")
            if token:
                session.headers["X-Vault-Token"] = token

            existing = self._read_existing(session, secrets_path)
            if isinstance(existing, dict):
                stored = existing.get("data")
                if isinstance(stored, dict) and stored.get("data") == dict(data):
                    _log.info("Secret in %s is already up-to-date.", secrets_path)
                    return

            payload: dict[str, Any] = dict(data) if self.kv_version == 1 else {"data": dict(data)}
            response = session.put(
                self._url(secrets_path), json=payload, timeout=_REQUEST_TIMEOUT
            )
            response.raise_for_status()