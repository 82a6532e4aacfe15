"""
Secret Store: Decrypted name/value mapping held sealed in memory.

Payload shapes accepted by ``SecretStore.build()``:
- ``EnvLines``: ``KEY=VALUE`` records, ``#`` comments, optional ``export``
- ``Json``: flat or nested object
- ``Yaml``: flat or nested mapping
- ``Envelope``: JSON/YAML carrying encryption metadata under a reserved
  top-level key (``sops``); reserved keys are stripped and a ``data``
  mapping, when present, holds the secrets.

Building is all-or-nothing: a payload either yields a complete store or
raises ParseError.

Security Note:
    Never log secret values. Only log names and counts.
"""
import re
import codecs
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

import orjson
import yaml

from ..exceptions import ParseError
from .crypto import new_store_key, seal, unseal, wipe

logger = logging.getLogger("shadow_secret.vault")

_EXCERPT_LENGTH = 40
_VALUE_SEPARATOR = re.compile(r"[:=]")
REDACTED = "***"
_ENV_RECORD = re.compile(r"^(?:export\s+)?[A-Za-z_][A-Za-z0-9_.\-]*\s*=")
_DEFAULT_RESERVED = ("sops",)


class PayloadFormat(str, Enum):
    """Closed set of decrypted payload shapes."""

    ENV_LINES = "env"
    JSON = "json"
    YAML = "yaml"
    ENVELOPE = "envelope"

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> Optional["PayloadFormat"]:
        """Guess the payload format from a vault file extension."""
        suffix = Path(path).suffix.lower()
        return _SUFFIXES.get(suffix)


_SUFFIXES = {
    ".env": PayloadFormat.ENV_LINES,
    ".dotenv": PayloadFormat.ENV_LINES,
    ".json": PayloadFormat.JSON,
    ".yaml": PayloadFormat.YAML,
    ".yml": PayloadFormat.YAML,
}


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def strip_bom(raw: bytes) -> bytes:
    """Drop a leading UTF-8 byte-order mark, if any."""
    if raw.startswith(codecs.BOM_UTF8):
        return raw[len(codecs.BOM_UTF8):]
    return raw


def _redact(line: str) -> str:
    """Keep a record's name and mask everything after its separator."""
    match = _VALUE_SEPARATOR.search(line)
    if match is None:
        return REDACTED
    return f"{line[:match.end()].rstrip()[:_EXCERPT_LENGTH]} {REDACTED}"


def _excerpt(text: str) -> str:
    """First meaningful line of a payload, with its value masked."""
    for line in text.splitlines():
        line = line.strip()
        if line:
            return _redact(line)
    return ""


def _decode(raw: bytes, fmt: PayloadFormat) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as err:
        raise ParseError(
            fmt.value,
            f"payload is not valid UTF-8 (byte offset {err.start})",
            _excerpt(raw.decode("utf-8", errors="replace")),
        ) from err


def detect_format(raw: bytes) -> PayloadFormat:
    """Sniff the payload shape of BOM-free decrypted output."""
    text = raw.decode("utf-8", errors="replace").lstrip()
    if text.startswith("{"):
        return PayloadFormat.JSON
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if _ENV_RECORD.match(line):
            return PayloadFormat.ENV_LINES
        break
    return PayloadFormat.YAML


def _render_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def flatten(mapping: Mapping, fmt: PayloadFormat, prefix: str = "") -> dict[str, str]:
    """Flatten nested mappings, joining key segments with ``_``.

    Raises:
        ParseError: On sequence values or empty keys.
    """
    flat: dict[str, str] = {}
    for key, value in mapping.items():
        key = str(key).strip()
        if not key:
            raise ParseError(fmt.value, "empty secret name")
        name = f"{prefix}_{key}" if prefix else key
        if isinstance(value, Mapping):
            flat.update(flatten(value, fmt, name))
        elif isinstance(value, (list, tuple)):
            raise ParseError(
                fmt.value, f"value for '{name}' must be a scalar, found a sequence"
            )
        else:
            flat[name] = _render_scalar(value)
    return flat


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env(raw: bytes) -> dict[str, str]:
    """Parse ``KEY=VALUE`` records."""
    text = _decode(raw, PayloadFormat.ENV_LINES)
    secrets: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key:
            raise ParseError(PayloadFormat.ENV_LINES.value, "empty secret name", _excerpt(line))
        secrets[key] = _unquote(value.strip())
    return secrets


def _load_json(raw: bytes) -> Any:
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise ParseError(
            PayloadFormat.JSON.value, str(err), _excerpt(raw.decode("utf-8", "replace"))
        ) from err


def _load_yaml(raw: bytes) -> Any:
    text = _decode(raw, PayloadFormat.YAML)
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as err:
        reason = str(err).splitlines()[0] if str(err) else "invalid YAML"
        raise ParseError(PayloadFormat.YAML.value, reason, _excerpt(text)) from err


def parse_structured(
    raw: bytes,
    fmt: PayloadFormat,
    reserved_keys: Iterable[str] = _DEFAULT_RESERVED,
) -> tuple[PayloadFormat, dict[str, str]]:
    """Parse JSON, YAML or an envelope of either.

    Returns:
        Tuple of (effective format, flattened secrets). A mapping that
        carries a reserved key is reported as ``ENVELOPE``.
    """
    if fmt is PayloadFormat.ENVELOPE:
        is_json = raw.lstrip().startswith(b"{")
        document = _load_json(raw) if is_json else _load_yaml(raw)
    elif fmt is PayloadFormat.JSON:
        document = _load_json(raw)
    else:
        document = _load_yaml(raw)

    if not isinstance(document, Mapping):
        text = raw.decode("utf-8", "replace")
        raise ParseError(
            fmt.value, "document must be a mapping of names to values", _excerpt(text)
        )

    reserved = set(reserved_keys)
    if fmt is PayloadFormat.ENVELOPE or reserved.intersection(document):
        fmt = PayloadFormat.ENVELOPE
        document = {k: v for k, v in document.items() if k not in reserved}
        data = document.get("data")
        if isinstance(data, Mapping):
            document = data
    return fmt, flatten(document, fmt)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Secret:
    """A named secret whose value stays sealed until revealed."""

    __slots__ = ("name", "_sealed")

    def __init__(self, name: str, sealed: bytearray):
        self.name = name
        self._sealed = sealed

    def __repr__(self) -> str:
        return f"<Secret {self.name}>"

    def reveal(self, key: bytearray) -> bytearray:
        return unseal(self._sealed, key)

    def wipe(self) -> None:
        wipe(self._sealed)


class SecretStore:
    """Immutable-after-construction mapping of secret name to Secret.

    Lookup is by exact name; a missing name is a normal outcome and
    returns ``None``. ``purge()`` overwrites every sealed value and the
    store key, after which the store is unusable.
    """

    def __init__(self, secrets: Mapping[str, str], fmt: Optional[PayloadFormat] = None):
        self._key = new_store_key()
        self._format = fmt
        self._purged = False
        self._secrets: dict[str, Secret] = {}
        for name, value in secrets.items():
            plaintext = bytearray(value.encode("utf-8"))
            try:
                self._secrets[name] = Secret(name, seal(plaintext, self._key))
            finally:
                wipe(plaintext)

    def __repr__(self) -> str:
        state = "purged" if self._purged else f"{len(self._secrets)} secret(s)"
        return f"<SecretStore [{state}]>"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        raw: bytes,
        declared_format: Optional[PayloadFormat] = None,
        reserved_keys: Iterable[str] = _DEFAULT_RESERVED,
    ) -> "SecretStore":
        """Parse decrypted output into a store.

        Args:
            raw: Raw decrypted payload (a UTF-8 BOM prefix is tolerated).
            declared_format: Payload shape, or None to auto-detect.
            reserved_keys: Envelope metadata keys to strip.

        Returns:
            Populated SecretStore.

        Raises:
            ParseError: If the payload cannot be parsed or holds no secrets.
        """
        raw = strip_bom(bytes(raw))
        fmt = declared_format or detect_format(raw)
        if fmt is PayloadFormat.ENV_LINES:
            secrets = parse_env(raw)
        else:
            fmt, secrets = parse_structured(raw, fmt, reserved_keys)
        if not secrets:
            raise ParseError(
                fmt.value,
                "No secrets found. Expected name/value pairs.",
                _excerpt(raw.decode("utf-8", "replace")),
            )
        logger.debug("Parsed %d secret(s) from %s payload", len(secrets), fmt.value)
        try:
            return cls(secrets, fmt)
        finally:
            secrets.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _check(self) -> None:
        if self._purged:
            raise RuntimeError("Secret store has been purged")

    @property
    def format(self) -> Optional[PayloadFormat]:
        return self._format

    @property
    def purged(self) -> bool:
        return self._purged

    def get(self, name: str) -> Optional[str]:
        """Return the secret value for ``name`` or None if absent."""
        value = self.reveal(name)
        if value is None:
            return None
        try:
            return value.decode("utf-8")
        finally:
            wipe(value)

    def reveal(self, name: str) -> Optional[bytearray]:
        """Return the value as a wipeable buffer; caller must wipe it."""
        self._check()
        secret = self._secrets.get(name)
        if secret is None:
            return None
        return secret.reveal(self._key)

    def names(self) -> list[str]:
        self._check()
        return list(self._secrets)

    def __contains__(self, name: object) -> bool:
        return not self._purged and name in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def purge(self) -> None:
        """Overwrite every sealed value and the store key. Idempotent."""
        if self._purged:
            return
        for secret in self._secrets.values():
            secret.wipe()
        count = len(self._secrets)
        self._secrets.clear()
        wipe(self._key)
        self._purged = True
        logger.debug("Secret store purged (%d secret(s) wiped)", count)
