"""Reads rule definitions and rule-id list files from disk."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional, Set

import yaml

logger = logging.getLogger(__name__)

RULE_EXTENSIONS = (".yml", ".yaml")


@dataclass(frozen=True)
class RuleDocument:
    """One raw rule definition plus where it came from."""
    source: str
    definition: Optional[Dict[str, Any]]
    error: Optional[str] = None


def iter_rule_files(root: str) -> Iterable[str]:
    if os.path.isfile(root):
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in sorted(filenames):
            if filename.startswith(".") or not filename.endswith(RULE_EXTENSIONS):
                continue
            yield os.path.join(dirpath, filename)


def load_rule_documents(paths: Iterable[str]) -> Iterator[RuleDocument]:
    """
    Yield a RuleDocument for each rule file under the given paths.
    Unreadable or unparsable files are yielded with `error` set so the
    failure is attributed to that file instead of aborting the load.
    """
    for root in paths:
        if not root:
            continue
        if not os.path.exists(root):
            logger.warning(f"Rules path does not exist: {root}")
            continue
        for file_path in iter_rule_files(root):
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    definition = yaml.safe_load(f)
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
                yield RuleDocument(source=file_path, definition=None, error=f"Failed to read rule file: {e}")
                continue
            yield RuleDocument(source=file_path, definition=definition)


def read_id_list(path: Optional[str]) -> Set[str]:
    """
    Read a list of rule ids, one per line. Everything after '#' is a comment.
    A missing file yields an empty set.
    """
    ids: Set[str] = set()
    if not path:
        return ids
    if not os.path.exists(path):
        logger.warning(f"Rule id list not found: {path}")
        return ids
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            value = line.split("#", 1)[0].strip()
            if value:
                ids.add(value)
    logger.debug(f"Read {len(ids)} rule ids from {path}")
    return ids
