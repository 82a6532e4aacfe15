"""
Vault Configuration: Engine settings, vault references and target descriptors.

Reads engine overrides from environment variables:
    SHADOW_SECRET_SOPS_BIN = <decrypt executable name or path>
    SHADOW_SECRET_DECRYPT_TIMEOUT = <seconds>

Security Note:
    Never log key material. Only log paths and key-file locations.
"""
import os
import re
import logging
from pathlib import Path
from typing import Annotated, Iterable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .store import PayloadFormat

logger = logging.getLogger("shadow_secret.vault")

SUPPORTED_ENGINES = ("sops",)
WILDCARD_TOKEN = "$ALL"

_NAME_PATTERN = re.compile(r"^[A-Z0-9_]+$")
_PLACEHOLDER_PATTERN = re.compile(r"^\$(?:\{([A-Z0-9_]+)\}|([A-Z0-9_]+))$")


def resolve_path(path: Union[str, Path], base_dir: Optional[Path] = None) -> Path:
    """Resolve a configured path to an absolute one.

    Absolute paths are returned as-is, ``~`` is expanded to the home
    directory and relative paths are joined to ``base_dir``. The process's
    current directory is never consulted.

    Raises:
        ValueError: If ``path`` is relative and no ``base_dir`` is given.
    """
    candidate = Path(path)
    if str(path).startswith("~"):
        return candidate.expanduser()
    if candidate.is_absolute():
        return candidate
    if base_dir is None:
        raise ValueError(
            f"Relative path '{path}' requires a base directory to resolve against"
        )
    return Path(base_dir) / candidate


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Validated settings for the external decrypt tool."""

    engine: str = Field(default="sops")
    executable: str = Field(default="sops")
    decrypt_args: list[str] = Field(default_factory=lambda: ["--decrypt"])
    key_file_env: str = Field(default="SOPS_AGE_KEY_FILE")
    timeout: float = Field(default=60.0, gt=0)
    reserved_keys: list[str] = Field(default_factory=lambda: ["sops"])

    @field_validator("engine")
    @classmethod
    def validate_engine(cls, v: str) -> str:
        """Validate the vault engine is supported."""
        if v not in SUPPORTED_ENGINES:
            raise ValueError(
                f"Unsupported vault engine: '{v}'. Only 'sops' is supported."
            )
        return v

    @field_validator("executable")
    @classmethod
    def validate_executable(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Decrypt executable cannot be empty")
        return v

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create EngineConfig from environment overrides.

        Returns:
            Populated EngineConfig instance.
        """
        values: dict = {}
        executable = os.environ.get("SHADOW_SECRET_SOPS_BIN")
        if executable:
            values["executable"] = executable
        timeout = os.environ.get("SHADOW_SECRET_DECRYPT_TIMEOUT")
        if timeout:
            values["timeout"] = float(timeout)
        return cls(**values)


class VaultRef(BaseModel):
    """One resolved vault reference for a session."""

    path: Path
    age_key_path: Optional[Path] = None
    base_dir: Optional[Path] = None
    format: Optional[PayloadFormat] = None

    def resolve(self) -> Path:
        """Absolute location of the vault file."""
        return resolve_path(self.path, self.base_dir)

    def resolve_key(self) -> Optional[Path]:
        """Absolute location of the key file, if one was configured."""
        if self.age_key_path is None:
            return None
        return resolve_path(self.age_key_path, self.base_dir)


# ---------------------------------------------------------------------------
# Placeholder specs
# ---------------------------------------------------------------------------

class NamedSet(BaseModel):
    """A finite set of placeholder names eligible for substitution."""

    kind: Literal["named"] = "named"
    names: frozenset[str]

    model_config = {"frozen": True}

    @field_validator("names")
    @classmethod
    def validate_names(cls, v: frozenset[str]) -> frozenset[str]:
        if not v:
            raise ValueError("Placeholder set cannot be empty")
        for name in v:
            if not _NAME_PATTERN.match(name):
                raise ValueError(f"Invalid placeholder name: '{name}'")
        return v

    def allows(self, name: str) -> bool:
        return name in self.names


class Wildcard(BaseModel):
    """Every secret is eligible; ``$ALL`` tokens resolve by enclosing key."""

    kind: Literal["wildcard"] = "wildcard"

    model_config = {"frozen": True}

    def allows(self, name: str) -> bool:
        return True


PlaceholderSpec = Annotated[Union[NamedSet, Wildcard], Field(discriminator="kind")]


def parse_placeholders(entries: Iterable[str]) -> Union[NamedSet, Wildcard]:
    """Map configured placeholder strings to a PlaceholderSpec.

    Accepts ``$NAME`` and ``${NAME}`` entries. Any ``$ALL`` entry makes
    the whole spec a Wildcard.

    Raises:
        ValueError: If an entry is not a valid placeholder token.
    """
    names: set[str] = set()
    for entry in entries:
        entry = entry.strip()
        if entry in (WILDCARD_TOKEN, "${ALL}"):
            return Wildcard()
        match = _PLACEHOLDER_PATTERN.match(entry)
        if not match:
            raise ValueError(
                f"Invalid placeholder '{entry}': expected $NAME or ${{NAME}}"
            )
        names.add(match.group(1) or match.group(2))
    return NamedSet(names=frozenset(names))


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

class Target(BaseModel):
    """A configuration file that receives secrets during a session."""

    name: str = Field(min_length=1)
    path: Path
    placeholders: PlaceholderSpec

    model_config = {"frozen": True}

    @field_validator("placeholders", mode="before")
    @classmethod
    def coerce_placeholders(cls, v):
        """Accept the raw list form used in configuration files."""
        if isinstance(v, (list, tuple, set, frozenset)):
            return parse_placeholders(v)
        return v

    @classmethod
    def from_config(
        cls,
        name: str,
        path: Union[str, Path],
        placeholders: Iterable[str],
        base_dir: Optional[Path] = None,
    ) -> "Target":
        """Build a Target from configuration values.

        Args:
            name: Display name.
            path: Target file path; relative paths join ``base_dir``.
            placeholders: Raw placeholder strings (``$NAME``, ``$ALL``).
            base_dir: Directory of the configuration file.

        Returns:
            Validated Target.
        """
        return cls(
            name=name,
            path=resolve_path(path, base_dir),
            placeholders=parse_placeholders(placeholders),
        )
