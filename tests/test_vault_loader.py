"""
Tests for VaultLoader and engine configuration.

The decrypt tool is never executed: ``shutil.which`` and
``subprocess.run`` are replaced with fakes.

Tests cover:
- Vault path and key-file resolution
- Tool resolution and missing-tool errors
- Decrypt failures surfacing stderr
- Payload format selection by extension
"""
import codecs
import subprocess
from pathlib import Path

import pytest

from shadow_secret.exceptions import (
    DecryptFailed,
    ParseError,
    ToolMissing,
    VaultNotFound,
)
from shadow_secret.vault import loader as loader_mod
from shadow_secret.vault.config import EngineConfig, VaultRef
from shadow_secret.vault.loader import VaultLoader
from shadow_secret.vault.store import PayloadFormat


class FakeRun:
    """Stand-in for subprocess.run recording its calls."""

    def __init__(self, stdout=b"", stderr=b"", returncode=0, raises=None):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.raises = raises
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(
            command, self.returncode, stdout=self.stdout, stderr=self.stderr,
        )


@pytest.fixture
def vault_file(tmp_path):
    path = tmp_path / "secrets.enc.env"
    path.write_bytes(b"ENC[...]")
    return path


@pytest.fixture
def fake_which(monkeypatch):
    monkeypatch.setattr(loader_mod.shutil, "which", lambda name: f"/usr/bin/{name}")


def install_run(monkeypatch, fake):
    monkeypatch.setattr(loader_mod.subprocess, "run", fake)
    return fake


# --- Configuration ---

class TestEngineConfig:
    """Tests for EngineConfig validation."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.engine == "sops"
        assert config.executable == "sops"
        assert config.decrypt_args == ["--decrypt"]
        assert config.key_file_env == "SOPS_AGE_KEY_FILE"

    def test_unsupported_engine(self):
        with pytest.raises(ValueError, match="Unsupported vault engine"):
            EngineConfig(engine="vault")

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            EngineConfig(timeout=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SHADOW_SECRET_SOPS_BIN", "/opt/sops/bin/sops")
        monkeypatch.setenv("SHADOW_SECRET_DECRYPT_TIMEOUT", "5")
        config = EngineConfig.from_env()
        assert config.executable == "/opt/sops/bin/sops"
        assert config.timeout == 5.0

    def test_from_env_defaults(self, monkeypatch):
        monkeypatch.delenv("SHADOW_SECRET_SOPS_BIN", raising=False)
        monkeypatch.delenv("SHADOW_SECRET_DECRYPT_TIMEOUT", raising=False)
        assert EngineConfig.from_env() == EngineConfig()


# --- Loading ---

class TestVaultLoader:
    """Tests for VaultLoader.load()."""

    def test_load_env_vault(self, monkeypatch, fake_which, vault_file):
        fake = install_run(monkeypatch, FakeRun(stdout=b"API_KEY=sk_test_123\n"))
        store = VaultLoader().load(vault_file)

        assert store.get("API_KEY") == "sk_test_123"
        command, kwargs = fake.calls[0]
        assert command == ["/usr/bin/sops", "--decrypt", str(vault_file)]
        assert kwargs["capture_output"] is True

    def test_relative_path_uses_base_dir(self, monkeypatch, fake_which, vault_file, tmp_path):
        """Test relative vault paths resolve against base_dir, not cwd."""
        other = tmp_path / "elsewhere"
        other.mkdir()
        monkeypatch.chdir(other)
        fake = install_run(monkeypatch, FakeRun(stdout=b"A=1\n"))

        VaultLoader().load("secrets.enc.env", base_dir=vault_file.parent)

        assert fake.calls[0][0][-1] == str(vault_file)

    def test_relative_path_without_base_dir(self):
        with pytest.raises(ValueError, match="base directory"):
            VaultLoader().load("secrets.enc.env")

    def test_key_file_sets_environment(self, monkeypatch, fake_which, vault_file, tmp_path):
        fake = install_run(monkeypatch, FakeRun(stdout=b"A=1\n"))
        key = tmp_path / "keys.txt"

        VaultLoader().load(vault_file, age_key_path=key)

        env = fake.calls[0][1]["env"]
        assert env["SOPS_AGE_KEY_FILE"] == str(key)

    def test_missing_vault(self, monkeypatch, fake_which, tmp_path):
        fake = install_run(monkeypatch, FakeRun())
        with pytest.raises(VaultNotFound) as exc:
            VaultLoader().load(tmp_path / "absent.enc.env")
        assert exc.value.kind == "not_found"
        assert fake.calls == []

    def test_tool_missing(self, monkeypatch, vault_file):
        monkeypatch.setattr(loader_mod.shutil, "which", lambda name: None)
        with pytest.raises(ToolMissing) as exc:
            VaultLoader().load(vault_file)
        assert exc.value.as_dict()["kind"] == "tool_missing"

    def test_tool_vanishes_before_exec(self, monkeypatch, fake_which, vault_file):
        install_run(monkeypatch, FakeRun(raises=FileNotFoundError("sops")))
        with pytest.raises(ToolMissing):
            VaultLoader().load(vault_file)

    def test_decrypt_failed_surfaces_stderr(self, monkeypatch, fake_which, vault_file):
        """Test a non-zero exit reports the tool's stderr."""
        install_run(monkeypatch, FakeRun(stderr=b"no key found", returncode=128))
        with pytest.raises(DecryptFailed) as exc:
            VaultLoader().load(vault_file)
        assert "no key found" in str(exc.value)
        assert exc.value.returncode == 128
        assert exc.value.stderr == "no key found"

    def test_decrypt_timeout(self, monkeypatch, fake_which, vault_file):
        install_run(
            monkeypatch, FakeRun(raises=subprocess.TimeoutExpired(["sops"], 1)),
        )
        with pytest.raises(DecryptFailed, match="timed out"):
            VaultLoader(EngineConfig(timeout=1)).load(vault_file)

    def test_parse_failure(self, monkeypatch, fake_which, tmp_path):
        path = tmp_path / "secrets.json"
        path.write_bytes(b"ENC")
        install_run(monkeypatch, FakeRun(stdout=b"{broken"))
        with pytest.raises(ParseError) as exc:
            VaultLoader().load(path)
        assert exc.value.format == "json"

    def test_bom_prefixed_output(self, monkeypatch, fake_which, tmp_path):
        path = tmp_path / "secrets.enc.yaml"
        path.write_bytes(b"ENC")
        install_run(monkeypatch, FakeRun(stdout=codecs.BOM_UTF8 + b"API_KEY: sk\n"))
        assert VaultLoader().load(path).get("API_KEY") == "sk"

    def test_declared_format_wins(self, monkeypatch, fake_which, tmp_path):
        path = tmp_path / "secrets.bin"
        path.write_bytes(b"ENC")
        install_run(monkeypatch, FakeRun(stdout=b'{"data": {"K": "v"}, "sops": {}}'))
        store = VaultLoader().load(path, declared_format=PayloadFormat.ENVELOPE)
        assert store.get("K") == "v"

    def test_load_ref(self, monkeypatch, fake_which, vault_file, tmp_path):
        fake = install_run(monkeypatch, FakeRun(stdout=b"A=1\n"))
        ref = VaultRef(path="secrets.enc.env", base_dir=vault_file.parent, age_key_path="k.txt")
        store = VaultLoader().load_ref(ref)
        assert store.get("A") == "1"
        assert fake.calls[0][1]["env"]["SOPS_AGE_KEY_FILE"] == str(vault_file.parent / "k.txt")


class TestVaultRef:
    """Tests for VaultRef path resolution."""

    def test_absolute(self, tmp_path):
        assert VaultRef(path=tmp_path / "v.env").resolve() == tmp_path / "v.env"

    def test_home_expansion(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("USERPROFILE", str(tmp_path))
        assert VaultRef(path="~/v.env").resolve() == Path(tmp_path) / "v.env"

    def test_no_key(self, tmp_path):
        assert VaultRef(path=tmp_path / "v.env").resolve_key() is None
