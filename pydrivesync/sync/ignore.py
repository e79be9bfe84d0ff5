"""Ignore file support (gitignore-style path exclusion).

An ignore file (``.drivesyncignore``) may live in any directory of the
local tree. Its rules apply to that directory and everything below it.
Patterns passed on the command line apply to the whole tree.

Supported syntax:
    * ``#`` starts a comment, blank lines are skipped
    * ``*`` matches anything except ``/``, ``?`` one character,
      ``**`` any number of directories
    * a leading ``/`` anchors the pattern to the directory of the ignore file
    * a trailing ``/`` matches directories only
    * a leading ``!`` re-includes a previously ignored path
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..utils import DEFAULT_IGNORE_FILE

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = DEFAULT_IGNORE_FILE


def _glob_to_regex(pattern: str) -> str:
    """Translate a gitignore glob into a regular expression body."""
    regex = ""
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i : i + 3] == "**/":
                regex += "(?:.*/)?"
                i += 3
                continue
            if pattern[i : i + 2] == "**":
                regex += ".*"
                i += 2
                continue
            regex += "[^/]*"
        elif char == "?":
            regex += "[^/]"
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                regex += re.escape(char)
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                regex += f"[{body}]"
                i = end
        else:
            regex += re.escape(char)
        i += 1
    return regex


@dataclass
class IgnoreRule:
    """A single parsed ignore pattern."""

    pattern: str
    """Pattern text as written"""

    base: str = ""
    """Relative directory the rule was loaded from ("" for the root)"""

    negated: bool = False
    dir_only: bool = False
    anchored: bool = False

    def __post_init__(self) -> None:
        body = self.pattern
        if body.startswith("!"):
            self.negated = True
            body = body[1:]
        if body.endswith("/"):
            self.dir_only = True
            body = body.rstrip("/")
        if body.startswith("/"):
            self.anchored = True
            body = body.lstrip("/")
        elif "/" in body:
            # A slash in the middle also anchors the pattern (gitignore rules)
            self.anchored = True

        prefix = "" if self.anchored else "(?:.*/)?"
        self._regex = re.compile(f"^{prefix}{_glob_to_regex(body)}$")

    def matches(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check whether the rule matches a path relative to the sync root.

        A rule matching a parent directory also matches everything below it.
        """
        if self.base:
            if not relative_path.startswith(self.base + "/"):
                return False
            relative_path = relative_path[len(self.base) + 1 :]

        parts = relative_path.split("/")
        for depth in range(1, len(parts) + 1):
            candidate = "/".join(parts[:depth])
            candidate_is_dir = depth < len(parts) or is_dir
            if self.dir_only and not candidate_is_dir:
                continue
            if self._regex.match(candidate):
                return True
        return False


def parse_ignore_lines(lines: list[str], base: str = "") -> list[IgnoreRule]:
    """Parse ignore file lines into rules, skipping blanks and comments."""
    rules = []
    for line in lines:
        line = line.rstrip("\n").rstrip()
        if not line or line.startswith("#"):
            continue
        rules.append(IgnoreRule(pattern=line, base=base))
    return rules


def load_ignore_file(path: Path, base: str = "") -> list[IgnoreRule]:
    """Load rules from an ignore file.

    Args:
        path: Ignore file to read
        base: Relative directory the rules apply to

    Returns:
        List of rules (empty if the file cannot be read)
    """
    try:
        with open(path, encoding="utf-8") as f:
            return parse_ignore_lines(f.readlines(), base=base)
    except OSError as e:
        logger.warning(f"Could not read ignore file {path}: {e}")
        return []


class IgnoreFileManager:
    """Collects ignore rules for one scan and answers ``is_ignored``."""

    def __init__(self, base_path: Path):
        self.base_path = base_path
        self.rules: list[IgnoreRule] = []
        self._loaded_dirs: set[str] = set()

    def load_cli_patterns(self, patterns: list[str]) -> None:
        """Add patterns that apply to the whole tree."""
        self.rules.extend(parse_ignore_lines(list(patterns)))

    def load_from_directory(self, directory: Path) -> None:
        """Load the ignore file of ``directory`` if present (once)."""
        relative = directory.relative_to(self.base_path).as_posix()
        base = "" if relative == "." else relative
        if base in self._loaded_dirs:
            return
        self._loaded_dirs.add(base)

        ignore_file = directory / IGNORE_FILE_NAME
        if ignore_file.is_file():
            rules = load_ignore_file(ignore_file, base=base)
            logger.debug(f"Loaded {len(rules)} ignore rule(s) from {ignore_file}")
            self.rules.extend(rules)

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        """Return True if the last matching rule excludes the path."""
        ignored: Optional[bool] = None
        for rule in self.rules:
            if rule.matches(relative_path, is_dir=is_dir):
                ignored = not rule.negated
        return bool(ignored)
