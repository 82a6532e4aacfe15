"""Shadow Secret: transactional secret injection for configuration files."""
from .version import __version__
from .exceptions import (
    ShadowSecretError,
    VaultError,
    VaultNotFound,
    DecryptFailed,
    ToolMissing,
    ParseError,
    InjectionError,
    RestoreError,
)
from .session import Session, SessionHandle, SessionState

__all__ = [
    "__version__",
    "ShadowSecretError",
    "VaultError",
    "VaultNotFound",
    "DecryptFailed",
    "ToolMissing",
    "ParseError",
    "InjectionError",
    "RestoreError",
    "Session",
    "SessionHandle",
    "SessionState",
]
