"""
Placeholder Substitution Engine.

Substitution is byte-exact text replacement: the raw content is scanned
for placeholder tokens and each matched span is replaced in place. The
document is never parsed, so key order, indentation, comments and quoting
survive untouched in ENV, JSON and YAML files alike.

Token grammar:
    $NAME      uppercase letters, digits, underscores
    ${NAME}    braced form, same name space
    $ALL       wildcard marker

``$ALL`` resolution (Wildcard specs only): the token's enclosing field
name on the same line (``"apiKey": "$ALL"``, ``apiKey: $ALL``,
``API_KEY=$ALL``) is compared to secret names, first exactly, then
case-insensitively, then ignoring case and separators (``apiKey`` matches
``API_KEY``). No enclosing name, no match, or more than one match leaves
the token unchanged and reports it as unmatched.

Security Note:
    Never log secret values or file contents. Only log names and counts.
"""
import re
import logging
from pathlib import Path
from typing import NamedTuple, Optional, Union

from pydantic import BaseModel, Field

from .exceptions import InjectionError
from .vault.config import NamedSet, Target, Wildcard
from .vault.crypto import wipe
from .vault.store import SecretStore

logger = logging.getLogger("shadow_secret.injector")

WILDCARD_NAME = "ALL"

_TOKEN = re.compile(rb"\$(?:\{([A-Z0-9_]+)\}|([A-Z0-9_]+))")
_ENCLOSING_KEY = re.compile(
    rb"""["']?([A-Za-z_][A-Za-z0-9_.\-]*)["']?\s*[:=]\s*["']?\Z"""
)
_SEPARATORS = re.compile(r"[^a-z0-9]")

Spec = Union[NamedSet, Wildcard]


class Substitution(NamedTuple):
    """Outcome of one substitution pass over a document."""

    content: bytes
    replaced: int
    unmatched: list[str]


class InjectionResult(BaseModel):
    """Per-target report exposed to the caller."""

    target: str
    path: Path
    replaced: int = 0
    unmatched: list[str] = Field(default_factory=list)
    written: bool = False

    @property
    def warnings(self) -> list[str]:
        messages = [
            f"Unmatched placeholder {name} in {self.path}" for name in self.unmatched
        ]
        if self.replaced == 0:
            messages.append(f"No placeholders replaced in {self.path}")
        return messages


# ---------------------------------------------------------------------------
# Wildcard resolution
# ---------------------------------------------------------------------------

def _normalize(name: str) -> str:
    return _SEPARATORS.sub("", name.lower())


def enclosing_key(content: bytes, position: int) -> Optional[str]:
    """Field name that encloses the token starting at ``position``."""
    line_start = content.rfind(b"\n", 0, position) + 1
    match = _ENCLOSING_KEY.search(content, line_start, position)
    if match is None:
        return None
    return match.group(1).decode("utf-8", errors="replace")


def match_secret_name(key: str, names: list[str]) -> Optional[str]:
    """Pick the single secret name an enclosing key refers to."""
    if key in names:
        return key
    for candidates in (
        [n for n in names if n.lower() == key.lower()],
        [n for n in names if _normalize(n) == _normalize(key)],
    ):
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            return None
    return None


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------

def substitute(content: bytes, spec: Spec, store: SecretStore) -> Substitution:
    """Replace eligible placeholder tokens with secret values.

    Args:
        content: Raw file content.
        spec: Which placeholders this target allows.
        store: Secret Store consulted for values.

    Returns:
        Substitution with the new content, replacement count and the
        tokens left unmatched (in order of first appearance).
    """
    wildcard = isinstance(spec, Wildcard)
    names = store.names() if wildcard else []
    revealed: dict[str, Optional[bytearray]] = {}
    unmatched: list[str] = []
    out = bytearray()
    cursor = 0
    replaced = 0

    def _value(name: str) -> Optional[bytearray]:
        if name not in revealed:
            revealed[name] = store.reveal(name)
        return revealed[name]

    try:
        for match in _TOKEN.finditer(content):
            token = match.group(0).decode("ascii")
            name = (match.group(1) or match.group(2)).decode("ascii")
            if wildcard and name == WILDCARD_NAME:
                key = enclosing_key(content, match.start())
                resolved = match_secret_name(key, names) if key else None
                label = f"{token} (key '{key}')" if key else token
            elif spec.allows(name):
                resolved = name
                label = token
            else:
                continue

            value = _value(resolved) if resolved else None
            if value is None:
                if label not in unmatched:
                    unmatched.append(label)
                continue
            out += content[cursor:match.start()]
            out += value
            cursor = match.end()
            replaced += 1
        out += content[cursor:]
        return Substitution(bytes(out), replaced, unmatched)
    finally:
        for value in revealed.values():
            if value is not None:
                wipe(value)
        wipe(out)


def inject(content: bytes, spec: Spec, store: SecretStore) -> tuple[bytes, int]:
    """Return ``(new_content, replaced_count)`` for a document."""
    result = substitute(content, spec, store)
    return result.content, result.replaced


def inject_target(target: Target, store: SecretStore, registry) -> InjectionResult:
    """Back up, substitute and write one target file.

    The backup is always taken before anything is written.

    Raises:
        InjectionError: If the file cannot be backed up, read or written.
    """
    path = target.path
    try:
        registry.backup(path)
    except OSError as err:
        raise InjectionError(path, "could not back up file", target.name, err) from err
    try:
        with open(path, "rb") as fp:
            content = fp.read()
    except OSError as err:
        raise InjectionError(path, "could not read file", target.name, err) from err

    result = substitute(content, target.placeholders, store)
    report = InjectionResult(
        target=target.name,
        path=path,
        replaced=result.replaced,
        unmatched=result.unmatched,
    )
    for name in result.unmatched:
        logger.warning("Unmatched placeholder %s in %s", name, path)

    if result.replaced == 0:
        logger.warning("No placeholders replaced in target '%s' (%s)", target.name, path)
        return report

    try:
        with open(path, "wb") as fp:
            fp.write(result.content)
    except OSError as err:
        raise InjectionError(path, "could not write file", target.name, err) from err
    report.written = True
    logger.info(
        "Injected %d placeholder(s) into target '%s' (%s)",
        result.replaced, target.name, path,
    )
    return report
