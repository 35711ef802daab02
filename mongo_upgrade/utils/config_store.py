"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
mongod.conf store

Reads the YAML configuration with PyYAML and edits it line by line so that
comments, ordering and indentation survive every change. Directives are
addressed with dotted keys ("storage.engine", "security.authorization").

Disabling a directive comments it out together with its nested block; it is
never deleted, so an operator can always see and restore what was there.

Usage:
    config = ConfigStore("/etc/mongod.conf")
    config.set("storage.engine", "wiredTiger")
    config.toggle("storage.journal", enabled=False)
    config.save()
"""

import json
import re
import shutil
from pathlib import Path
from typing import Any, List, NamedTuple, Optional

import yaml

from .index import log_message

_KEY_LINE = re.compile(r"^(?P<indent>\s*)(?P<key>[A-Za-z_][\w.\-]*):(?:\s+(?P<value>.*?))?\s*$")
_COMMENT_PREFIX = re.compile(r"^(\s*)#\s?")
_PLAIN_SCALAR = re.compile(r"^[\w./\-]+$")
_TRAILING_COMMENT = re.compile(r"\s+#.*$")
_MISSING = object()


class _Entry(NamedTuple):
    lineno: int
    indent: int
    path: str
    leaf: str
    value: str


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip())


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if _PLAIN_SCALAR.match(text):
        return text
    return json.dumps(text)


def _split_comment(value: str) -> str:
    """Return the trailing ' # comment' of a value, if any."""
    match = _TRAILING_COMMENT.search(value or "")
    return match.group(0) if match else ""


class ConfigStore:
    """Comment-preserving editor for mongod.conf with explicit write-back."""

    def __init__(self, path: str = "/etc/mongod.conf"):
        self.path = Path(path)
        self.lines: List[str] = []
        self.load()

    def load(self) -> None:
        """(Re)read the file from disk, discarding unsaved edits."""
        if self.path.exists():
            self.lines = self.path.read_text().splitlines()
        else:
            self.lines = []

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def save(self) -> None:
        """Write the current lines back to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("\n".join(self.lines) + "\n")
        log_message(f"Saved {self.path}", "DEBUG")

    def copy_to(self, destination: str) -> str:
        """Copy the on-disk file aside and return the copy's path."""
        shutil.copy2(self.path, destination)
        return destination

    def restore_from(self, source: str) -> None:
        """Replace the on-disk file with a previously copied one and reload."""
        shutil.copy2(source, self.path)
        self.load()

    # --- reading ---

    def _parsed(self) -> dict:
        try:
            data = yaml.safe_load("\n".join(self.lines))
        except yaml.YAMLError as e:
            log_message(f"Failed to parse {self.path}: {e}", "WARNING")
            return {}
        return data if isinstance(data, dict) else {}

    def _lookup(self, key: str) -> Any:
        node: Any = self._parsed()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get(self, key: str, default: Any = None) -> Any:
        """Value of an active directive, or default."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def is_active(self, key: str) -> bool:
        """True when the directive is present and not commented out."""
        return self._lookup(key) is not _MISSING

    # --- line index ---

    def _entries(self) -> List[_Entry]:
        entries = []
        stack: List[tuple] = []
        for lineno, line in enumerate(self.lines):
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or stripped.startswith("-"):
                continue
            match = _KEY_LINE.match(line)
            if not match:
                continue
            indent = len(match.group("indent"))
            while stack and stack[-1][0] >= indent:
                stack.pop()
            leaf = match.group("key")
            path = ".".join([k for _, k in stack] + [leaf])
            stack.append((indent, leaf))
            entries.append(_Entry(lineno, indent, path, leaf, match.group("value") or ""))
        return entries

    def _find(self, key: str) -> Optional[_Entry]:
        for entry in self._entries():
            if entry.path == key:
                return entry
        return None

    def _block_end(self, lineno: int, indent: int) -> int:
        """Index one past the last line nested under the line at lineno."""
        end = lineno + 1
        cursor = lineno + 1
        while cursor < len(self.lines):
            line = self.lines[cursor]
            if line.strip():
                if _indent_of(line) <= indent:
                    break
                end = cursor + 1
            cursor += 1
        return end

    # --- writing ---

    def set(self, key: str, value: Any) -> None:
        """Set a scalar directive, creating parent blocks when missing."""
        rendered = _render(value)
        entry = self._find(key)
        if entry is not None:
            if not entry.value and self._block_end(entry.lineno, entry.indent) > entry.lineno + 1:
                raise ValueError(f"{key} is a block, not a scalar directive")
            comment = _split_comment(entry.value)
            self.lines[entry.lineno] = f"{' ' * entry.indent}{entry.leaf}: {rendered}{comment}"
            log_message(f"Config {key} set to {rendered}", "DEBUG")
            return

        parent, _, leaf = key.rpartition(".")
        if not parent:
            self.lines.append(f"{leaf}: {rendered}")
        else:
            parent_entry = self._ensure_block(parent)
            child_indent = self._child_indent(parent_entry)
            self.lines.insert(parent_entry.lineno + 1, f"{' ' * child_indent}{leaf}: {rendered}")
        log_message(f"Config {key} added as {rendered}", "DEBUG")

    def _ensure_block(self, key: str) -> _Entry:
        entry = self._find(key)
        if entry is not None:
            if entry.value and not entry.value.startswith("#"):
                raise ValueError(f"{key} holds a scalar value, cannot nest under it")
            return entry
        parent, _, leaf = key.rpartition(".")
        if not parent:
            self.lines.append(f"{leaf}:")
        else:
            parent_entry = self._ensure_block(parent)
            child_indent = self._child_indent(parent_entry)
            self.lines.insert(parent_entry.lineno + 1, f"{' ' * child_indent}{leaf}:")
        return self._find(key)

    def _child_indent(self, parent: _Entry) -> int:
        for line in self.lines[parent.lineno + 1:self._block_end(parent.lineno, parent.indent)]:
            if line.strip() and not line.strip().startswith("#"):
                return _indent_of(line)
        return parent.indent + 2

    def toggle(self, key: str, enabled: bool) -> bool:
        """
        Comment out (enabled=False) or restore (enabled=True) a directive and
        its nested block.

        Returns:
            bool: True if any line changed
        """
        if enabled:
            return self._uncomment(key)

        entry = self._find(key)
        if entry is None:
            return False
        end = self._block_end(entry.lineno, entry.indent)
        for index in range(entry.lineno, end):
            line = self.lines[index]
            if not line.strip() or line.strip().startswith("#"):
                continue
            indent = _indent_of(line)
            self.lines[index] = f"{line[:indent]}# {line[indent:]}"
        log_message(f"Config {key} commented out (lines {entry.lineno + 1}-{end})")
        return True

    def _uncomment(self, key: str) -> bool:
        stack: List[tuple] = []
        for lineno, line in enumerate(self.lines):
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("#"):
                candidate = _COMMENT_PREFIX.sub(r"\1", line, count=1)
                match = _KEY_LINE.match(candidate)
                if not match:
                    continue
                indent = len(match.group("indent"))
                parents = [k for i, k in stack if i < indent]
                if ".".join(parents + [match.group("key")]) != key:
                    continue
                self.lines[lineno] = candidate
                cursor = lineno + 1
                while cursor < len(self.lines):
                    nested = self.lines[cursor]
                    if not nested.strip():
                        cursor += 1
                        continue
                    restored = _COMMENT_PREFIX.sub(r"\1", nested, count=1)
                    if not nested.strip().startswith("#") or _indent_of(restored) <= indent:
                        break
                    self.lines[cursor] = restored
                    cursor += 1
                log_message(f"Config {key} restored from comment")
                return True
            match = _KEY_LINE.match(line)
            if match:
                indent = len(match.group("indent"))
                while stack and stack[-1][0] >= indent:
                    stack.pop()
                stack.append((indent, match.group("key")))
        return False
