"""
Shadow Secret Exceptions.

Every failure surfaced by the engine carries a ``kind`` tag and a
human-readable ``message`` so a calling layer can format it however it
chooses. Underlying OS errors are chained with ``raise ... from err``.
"""
from pathlib import Path
from typing import Any, Optional


class ShadowSecretError(Exception):
    """Base class for all engine errors."""

    kind: str = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict:
        """Structured ``{kind, message}`` form of this error."""
        return {"kind": self.kind, "message": self.message}


# ---------------------------------------------------------------------------
# Vault errors (fatal to the current operation, never partially applied)
# ---------------------------------------------------------------------------

class VaultError(ShadowSecretError):
    """Vault could not be turned into a Secret Store."""

    kind = "vault_error"


class VaultNotFound(VaultError):
    """Vault file does not exist or is not readable."""

    kind = "not_found"

    def __init__(self, path: Path, reason: str = "does not exist"):
        super().__init__(f"Vault file {reason}: {path}")
        self.path = path


class DecryptFailed(VaultError):
    """External decrypt tool exited non-zero (or timed out)."""

    kind = "decrypt_failed"

    def __init__(
        self,
        path: Path,
        stderr: str = "",
        returncode: Optional[int] = None,
    ):
        detail = stderr.strip() or "Unknown error"
        super().__init__(f"Decryption of {path} failed: {detail}")
        self.path = path
        self.stderr = stderr
        self.returncode = returncode


class ToolMissing(VaultError):
    """Decrypt executable is not resolvable on the search path."""

    kind = "tool_missing"

    def __init__(self, executable: str):
        super().__init__(
            f"'{executable}' is not installed or not in PATH. "
            "Please install it first."
        )
        self.executable = executable


class ParseError(VaultError):
    """Decrypted payload could not be parsed into secrets."""

    kind = "parse_failed"

    def __init__(self, fmt: str, reason: str, excerpt: str = ""):
        message = f"Failed to parse {fmt} payload: {reason}"
        if excerpt:
            message = f"{message} (near {excerpt!r})"
        super().__init__(message)
        self.format = fmt
        self.reason = reason
        self.excerpt = excerpt


# ---------------------------------------------------------------------------
# Injection / restoration errors
# ---------------------------------------------------------------------------

class InjectionError(ShadowSecretError):
    """A target could not be backed up, read, or written.

    ``rollback`` holds the RestoreResult of the rollback the session ran
    before re-raising, if any.
    """

    kind = "injection_failed"

    def __init__(
        self,
        path: Path,
        reason: str,
        target: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        label = f"target '{target}' ({path})" if target else str(path)
        message = f"Injection into {label} failed: {reason}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.path = path
        self.target = target
        self.cause = cause
        self.rollback = None


class RestoreError(ShadowSecretError):
    """One or more paths could not be restored.

    Residual plaintext may remain on disk at ``failed_paths``.
    """

    kind = "restore_failed"

    def __init__(self, result: Any):
        paths = ", ".join(str(f.path) for f in result.failed)
        super().__init__(
            f"Failed to restore {len(result.failed)} file(s), manual "
            f"remediation required: {paths}"
        )
        self.result = result

    @property
    def failed_paths(self) -> list[Path]:
        return [f.path for f in self.result.failed]
