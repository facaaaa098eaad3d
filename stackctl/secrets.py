"""
Secret stores - just-in-time resolution of secret references.

Parameters of kind `secret` carry a SecretRef, never the plaintext. When a
component verb needs the value in its environment, the executor asks a
SecretStore for it right before spawning the process. The value goes into
the child environment only; it is never written to the elaborate manifest
or the state file.

Stores:
- EnvSecretStore: `STACKCTL_SECRET_<ID>` environment variables
- FileSecretStore: a YAML mapping of id -> value or {kind, value}
- DictSecretStore: in-memory mapping (tests, embedding)
- ChainSecretStore: first store that knows the id wins
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import yaml

from stackctl.config import StackctlConfig
from stackctl.diagnostics import WarningCollector
from stackctl.errors import ConfigError, ParameterResolutionError
from stackctl.schemas import SecretRef

logger = logging.getLogger("stackctl")


@dataclass(frozen=True)
class StoredSecret:
    """A secret as held by a store; kind is None when the store does not record it."""
    value: str
    kind: Optional[str] = None


class SecretStore(ABC):
    """Abstract base class for secret backends."""

    @abstractmethod
    def get(self, ref: SecretRef) -> Optional[StoredSecret]:
        """
        Look up a secret.

        Args:
            ref: The reference stored in the locked parameter

        Returns:
            The stored secret, or None when this store does not know the id
        """
        pass


class DictSecretStore(SecretStore):
    """Secrets held in memory."""

    def __init__(self, secrets: Optional[Mapping[str, Any]] = None):
        self._secrets = dict(secrets or {})

    def get(self, ref: SecretRef) -> Optional[StoredSecret]:
        return _stored(self._secrets.get(ref.id))


class EnvSecretStore(SecretStore):
    """Secrets exported as environment variables named `<prefix><ID>`."""

    def __init__(self, prefix: str = "STACKCTL_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable(self, secret_id: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", secret_id).upper()

    def get(self, ref: SecretRef) -> Optional[StoredSecret]:
        value = self._environ.get(self.variable(ref.id))
        if value is None:
            return None
        return StoredSecret(value=value)


class FileSecretStore(SecretStore):
    """Secrets read from a YAML file, loaded lazily on first lookup."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._secrets: Optional[dict[str, Any]] = None

    def _load(self) -> dict[str, Any]:
        if self._secrets is None:
            if not self.path.exists():
                raise ConfigError(f"Secrets file not found: {self.path}")
            try:
                with open(self.path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in secrets file {self.path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Secrets file {self.path} must contain a mapping")
            self._secrets = {str(k): v for k, v in data.items()}
        return self._secrets

    def get(self, ref: SecretRef) -> Optional[StoredSecret]:
        return _stored(self._load().get(ref.id))


class ChainSecretStore(SecretStore):
    """Ask each store in turn."""

    def __init__(self, stores: Sequence[SecretStore]):
        self.stores = list(stores)

    def get(self, ref: SecretRef) -> Optional[StoredSecret]:
        for store in self.stores:
            secret = store.get(ref)
            if secret is not None:
                return secret
        return None


def _stored(entry: Any) -> Optional[StoredSecret]:
    if entry is None:
        return None
    if isinstance(entry, dict):
        if "value" not in entry:
            return None
        return StoredSecret(value=str(entry["value"]), kind=entry.get("kind"))
    return StoredSecret(value=str(entry))


def build_secret_store(config: StackctlConfig) -> SecretStore:
    """Environment variables first, then the configured secrets file."""
    stores: list[SecretStore] = [EnvSecretStore(config.secrets_env_prefix)]
    if config.secrets_file:
        stores.append(FileSecretStore(config.secrets_file))
    return ChainSecretStore(stores)


class SecretResolver:
    """
    Dereferences SecretRef values for process environments.

    A kind recorded by the store that disagrees with the declared kind is
    reported as a warning; the stored value is still used.
    """

    def __init__(self, store: SecretStore, warnings: WarningCollector):
        self.store = store
        self.warnings = warnings

    def resolve(self, ref: SecretRef, qname: str) -> str:
        """
        Raises:
            ParameterResolutionError: If no store holds the secret
        """
        secret = self.store.get(ref)
        if secret is None:
            raise ParameterResolutionError(f"Secret `{ref.id}` for parameter `{qname}` not found")
        if secret.kind and secret.kind != ref.kind:
            self.warnings.warn_once(
                f"Secret `{ref.id}` for parameter `{qname}` is stored as kind `{secret.kind}` "
                f"but declared as `{ref.kind}`"
            )
        logger.debug(f"Resolved secret `{ref.id}` for `{qname}`")
        return secret.value
