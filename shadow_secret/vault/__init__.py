"""Vault: decrypt, parse and hold secrets for one session.

Security Note (Threat Model):
    Secrets are decrypted in process memory during the session lifetime
    and sealed under a per-store key. A memory dump of the process could
    expose the store key and sealed values, from which plaintext can be
    recovered. Attackers with kernel-level memory access are out of scope.
"""

from .config import (
    EngineConfig,
    VaultRef,
    Target,
    NamedSet,
    Wildcard,
    PlaceholderSpec,
    parse_placeholders,
    resolve_path,
)
from .store import PayloadFormat, Secret, SecretStore
from .loader import VaultLoader

__all__ = [
    "EngineConfig",
    "VaultRef",
    "Target",
    "NamedSet",
    "Wildcard",
    "PlaceholderSpec",
    "parse_placeholders",
    "resolve_path",
    "PayloadFormat",
    "Secret",
    "SecretStore",
    "VaultLoader",
]
