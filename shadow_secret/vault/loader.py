"""
Vault Loader: Decrypt a vault file with the external tool into a SecretStore.

The decrypt tool runs as a blocking call; its standard output is captured
in memory as the raw payload and its standard error is kept for
diagnostics. No temporary files are written.

Security Note:
    Never log decrypted output. stderr from the tool is safe to surface.
"""
import os
import shutil
import logging
import subprocess
from pathlib import Path
from typing import Optional, Union

from ..exceptions import DecryptFailed, ToolMissing, VaultNotFound
from .config import EngineConfig, VaultRef, resolve_path
from .crypto import wipe
from .store import PayloadFormat, SecretStore

logger = logging.getLogger("shadow_secret.vault")


class VaultLoader:
    """Turns an encrypted vault file into a SecretStore.

    On any failure no store is produced.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def resolve_executable(self) -> str:
        """Locate the decrypt executable on the search path.

        ``shutil.which`` honours ``PATHEXT`` on Windows, so ``sops`` finds
        ``sops.exe`` there.

        Raises:
            ToolMissing: If the executable cannot be resolved.
        """
        found = shutil.which(self.config.executable)
        if found is None:
            raise ToolMissing(self.config.executable)
        return found

    def _environment(self, age_key_path: Optional[Path]) -> dict[str, str]:
        env = os.environ.copy()
        if age_key_path is not None:
            env[self.config.key_file_env] = str(age_key_path)
            logger.debug(
                "Using key file %s via %s", age_key_path, self.config.key_file_env
            )
        return env

    def decrypt(self, vault_path: Path, age_key_path: Optional[Path] = None) -> bytes:
        """Run the decrypt tool and return its standard output.

        Raises:
            VaultNotFound: If the vault file is missing or unreadable.
            ToolMissing: If the decrypt executable is not on the path.
            DecryptFailed: If the tool exits non-zero or times out.
        """
        if not vault_path.is_file():
            raise VaultNotFound(vault_path)
        if not os.access(vault_path, os.R_OK):
            raise VaultNotFound(vault_path, reason="is not readable")

        executable = self.resolve_executable()
        command = [executable, *self.config.decrypt_args, str(vault_path)]
        logger.info("Decrypting vault %s", vault_path)
        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                env=self._environment(age_key_path),
                timeout=self.config.timeout,
                check=False,
            )
        except FileNotFoundError as err:
            raise ToolMissing(self.config.executable) from err
        except subprocess.TimeoutExpired as err:
            raise DecryptFailed(
                vault_path,
                f"decrypt tool timed out after {self.config.timeout:g}s",
            ) from err

        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", errors="replace")
            logger.error(
                "Decrypt tool exited with status %d for %s", proc.returncode, vault_path
            )
            raise DecryptFailed(vault_path, stderr, proc.returncode)
        return proc.stdout or b""

    def load(
        self,
        vault_source: Union[str, Path],
        age_key_path: Optional[Union[str, Path]] = None,
        base_dir: Optional[Path] = None,
        declared_format: Optional[PayloadFormat] = None,
    ) -> SecretStore:
        """Decrypt and parse a vault file.

        Args:
            vault_source: Vault path, absolute or relative to ``base_dir``.
            age_key_path: Optional key file handed to the decrypt tool.
            base_dir: Directory relative paths resolve against.
            declared_format: Payload shape; defaults to the file extension,
                then auto-detection.

        Returns:
            Populated SecretStore.

        Raises:
            VaultError: Any of VaultNotFound, ToolMissing, DecryptFailed,
                ParseError.
        """
        vault_path = resolve_path(vault_source, base_dir)
        key_path = resolve_path(age_key_path, base_dir) if age_key_path else None
        payload = bytearray(self.decrypt(vault_path, key_path))
        try:
            fmt = declared_format or PayloadFormat.from_path(vault_path)
            store = SecretStore.build(
                bytes(payload), fmt, reserved_keys=self.config.reserved_keys,
            )
        finally:
            wipe(payload)
        logger.info("Vault loaded from %s: %d secret(s)", vault_path, len(store))
        return store

    def load_ref(self, ref: VaultRef) -> SecretStore:
        """Load the vault a VaultRef points to."""
        return self.load(
            ref.path,
            age_key_path=ref.age_key_path,
            base_dir=ref.base_dir,
            declared_format=ref.format,
        )
