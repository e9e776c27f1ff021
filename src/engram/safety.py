"""Dangerous-command blocklist for the pre-command hook.

Stateless and synchronous: a command is checked against a fixed list of
case-insensitive regular expressions and the first matching rule blocks it.
Nothing here touches the store, so a block can never be downgraded by a
store problem or by a pattern's history.

    >>> check("rm -rf /").allowed
    False
    >>> check("rm -rf ./build").allowed
    True
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

# A path argument that names the filesystem root or a home directory,
# optionally with a trailing slash or glob, followed by end of word.
_ROOT_OR_HOME = (
    r"(?:/\*?|~/?\*?|\$HOME/?\*?|\$\{HOME\}/?\*?|/home/?\*?|/root/?\*?)"
    r"(?=\s|$|[;&|])"
)
_FLAGS = r"(?:-{1,2}[\w-]+\s+)*"

DANGEROUS_PATTERNS: list[tuple[str, str, str]] = [
    (
        "recursive-delete-root",
        rf"\brm\s+{_FLAGS}(?:-[a-z]*r[a-z]*|--recursive)\s+{_FLAGS}{_ROOT_OR_HOME}",
        "Recursive delete of the filesystem root or a home directory",
    ),
    (
        "device-write",
        r">\s*/dev/(?:sd[a-z]|hd[a-z]|vd[a-z]|xvd[a-z]|nvme\d|disk\d|mmcblk\d)",
        "Redirect onto a raw block device",
    ),
    (
        "dd-device",
        r"\bdd\b[^;&|]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)",
        "Direct disk write with dd",
    ),
    (
        "shred-device",
        r"\bshred\b[^;&|]*\s/dev/",
        "Shredding a device file",
    ),
    (
        "permission-bomb",
        r"\bchmod(?=[^;&|]*\s(?:-[a-z]*R[a-z]*|--recursive)\b)"
        r"(?=[^;&|]*\s(?:0?777|[augo]*\+rwx)\b)"
        rf"[^;&|]*\s{_ROOT_OR_HOME}",
        "Recursive world-writable permissions on the root or a home directory",
    ),
    (
        "fork-bomb",
        r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        "Fork bomb",
    ),
    (
        "format-filesystem",
        r"\b(?:mkfs(?:\.\w+)?|mke2fs|wipefs)\b",
        "Formatting or wiping a filesystem",
    ),
]
"""``(rule name, regex, reason)`` triples, checked in order."""

_COMPILED: list[tuple[str, re.Pattern[str], str]] = [
    (name, re.compile(pattern, re.IGNORECASE), reason)
    for name, pattern, reason in DANGEROUS_PATTERNS
]


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of a safety check.  ``rule`` and ``reason`` are set when blocked."""

    allowed: bool
    rule: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "rule": self.rule, "reason": self.reason}


ALLOW = Verdict(allowed=True)


def check(command: str) -> Verdict:
    """Return the verdict for *command*; the first matching rule blocks it."""
    if not command:
        return ALLOW
    for name, regex, reason in _COMPILED:
        if regex.search(command):
            return Verdict(allowed=False, rule=name, reason=reason)
    return ALLOW


class SafetyFilter:
    """Object wrapper around :func:`check` for injection into the dispatcher."""

    def check(self, command: str) -> Verdict:
        return check(command)
