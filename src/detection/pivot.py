"""
Pivot keywords: values of investigative fields (user names, logon ids,
workstations, IP addresses...) collected from every record that produced a
detection, grouped into named categories.

The keywords file lists one ``Category.FieldName`` per line, e.g.::

    Users.SubjectUserName
    Users.TargetUserName
    Ip Addresses.IpAddress

Categories keep the order in which they first appear in the file.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional

from detection.errors import ConfigurationError
from detection.matchers import coerce_str, get_field_value
from detection.models import Record

logger = logging.getLogger(__name__)

# Placeholder and loopback values carry no pivot information.
IGNORED_VALUES = frozenset({"", "-", "127.0.0.1", "::1"})


class PivotCategory:
    __slots__ = ("name", "fields", "keywords")

    def __init__(self, name: str, fields: Optional[List[str]] = None):
        self.name = name
        self.fields: List[str] = list(fields or [])
        self.keywords: set = set()

    def header(self) -> str:
        return f"{self.name}: ( " + "".join(f"%{f}% " for f in self.fields) + "):"

    def render(self) -> str:
        return self.header() + "\n" + "".join(f"{k}\n" for k in sorted(self.keywords))


class PivotKeywords:
    """Thread-safe collector shared by the scan workers."""

    def __init__(self, categories: Dict[str, List[str]]):
        if not categories:
            raise ConfigurationError("No pivot keyword categories configured")
        self._lock = threading.Lock()
        self.categories: Dict[str, PivotCategory] = {
            name: PivotCategory(name, fields) for name, fields in categories.items()
        }

    @classmethod
    def load(cls, path: str) -> "PivotKeywords":
        if not os.path.exists(path):
            raise ConfigurationError(f"Pivot keywords file not found: {path}")
        categories: Dict[str, List[str]] = {}
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                entry = line.split("#", 1)[0].strip()
                if not entry:
                    continue
                name, sep, field_name = entry.partition(".")
                if not sep or not name.strip() or not field_name.strip():
                    logger.warning(f"Ignoring malformed pivot keyword entry {path}:{lineno}: {entry!r}")
                    continue
                fields = categories.setdefault(name.strip(), [])
                if field_name.strip() not in fields:
                    fields.append(field_name.strip())
        logger.info(f"Loaded {sum(len(v) for v in categories.values())} pivot fields "
                    f"in {len(categories)} categories from {path}")
        return cls(categories)

    def collect(self, record: Record) -> int:
        """Add the record's pivot field values. Returns how many were new."""
        added = 0
        with self._lock:
            for category in self.categories.values():
                for field_name in category.fields:
                    for value in _values(get_field_value(record.fields, field_name)):
                        if value not in category.keywords:
                            category.keywords.add(value)
                            added += 1
        return added

    def keywords(self, category: str) -> List[str]:
        with self._lock:
            found = self.categories.get(category)
            return sorted(found.keywords) if found else []

    def render(self) -> str:
        with self._lock:
            blocks = [category.render() + "\n" for category in self.categories.values()]
        return "The following pivot keywords were found:\n" + "".join(blocks)

    def output_paths(self, prefix: str) -> Dict[str, str]:
        return {name: f"{prefix}-{name}.txt" for name in self.categories}

    def write(self, prefix: str) -> List[str]:
        """Write one ``<prefix>-<category>.txt`` file per category."""
        out_dir = os.path.dirname(prefix)
        if out_dir and not os.path.exists(out_dir):
            os.makedirs(out_dir, exist_ok=True)
        written = []
        with self._lock:
            for name, path in self.output_paths(prefix).items():
                with open(path, "w", encoding="utf-8") as f:
                    f.write(self.categories[name].render())
                written.append(path)
        logger.info(f"Pivot keyword results saved to: {', '.join(written)}")
        return written

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {name: len(category.keywords) for name, category in self.categories.items()}


def _values(value: Any) -> Iterable[str]:
    items = value if isinstance(value, (list, tuple)) else [value]
    for item in items:
        if item is None or isinstance(item, dict):
            continue
        text = coerce_str(item).strip()
        if text not in IGNORED_VALUES:
            yield text
