"""Credential resolution for repositories and registries."""
from __future__ import annotations

import logging
import os
from typing import Mapping, Optional, Sequence

from .config import Server
from .constants import ENV_SECRET_PREFIX
from .types import CredentialError, Credentials, SecretDispatcher


class EnvironmentSecretDispatcher:
    """
    Resolves ``env:NAME`` password references from the environment.

    Any other value is returned unchanged.
    """

    def __init__(self, environment: Optional[Mapping[str, str]] = None):
        self.environment = os.environ if environment is None else environment

    def decrypt(self, value: str) -> str:
        if not value.startswith(ENV_SECRET_PREFIX):
            return value
        variable = value[len(ENV_SECRET_PREFIX):]
        secret = self.environment.get(variable)
        if secret is None:
            raise CredentialError(f"Environment variable '{variable}' referenced by a server password is not set")
        return secret


class ServerAuthentication:
    """Looks up server entries and resolves usable credentials."""

    def __init__(
        self,
        servers: Sequence[Server],
        dispatcher: Optional[SecretDispatcher] = None,
    ):
        self.servers = {server.id: server for server in servers}
        self.dispatcher = dispatcher or EnvironmentSecretDispatcher()
        self.logger = logging.getLogger(__name__)

    def get_server(self, server_id: Optional[str]) -> Optional[Server]:
        if server_id is None:
            return None
        server = self.servers.get(server_id)
        if server is None:
            self.logger.warning("No server definition found for %s in the server settings list.", server_id)
        return server

    def decrypt_password(self, password: Optional[str]) -> Optional[str]:
        if password is None:
            return None
        try:
            return self.dispatcher.decrypt(password)
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(f"Failed to decrypt password: {e}") from e

    def resolve(
        self,
        username: Optional[str],
        password: Optional[str],
        server_id: Optional[str],
    ) -> Optional[Credentials]:
        """
        Resolve credentials, preferring inline username and password.

        Returns:
            Credentials or None when nothing usable is configured

        Raises:
            CredentialError: If a server password cannot be decrypted
        """
        if username is not None and password is not None:
            return Credentials(username=username, password=password)

        server = self.get_server(server_id)
        if server is None or server.username is None or server.password is None:
            return None

        return Credentials(username=server.username, password=self.decrypt_password(server.password))
