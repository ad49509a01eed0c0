"""
MQTT topic schema for the remote configuration document.

Each field of the document is a retained message under <root>/<key>:
  app/enabled, app/package_name, app/name, app/url
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_ROOT_RE = re.compile(r"^[A-Za-z0-9_.\-]+(?:/[A-Za-z0-9_.\-]+)*$")
_KEY_RE = re.compile(r"^[a-z0-9_]+$")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def _validate_root(root: str) -> str:
    if not isinstance(root, str) or not root:
        raise TopicSchemaError("root must be a non-empty string")
    if not _ROOT_RE.fullmatch(root):
        raise TopicSchemaError(f"root '{root}' is invalid; allowed: [A-Za-z0-9_.-] segments")
    return root


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
        raise TopicSchemaError(f"key '{key}' is invalid; allowed: [a-z0-9_]+")
    return key


@dataclass(frozen=True, slots=True)
class ConfigTopics:
    """Topic schema for one configuration document rooted at `root`."""

    root: str

    def __post_init__(self) -> None:
        _validate_root(self.root)

    def field(self, key: str) -> str:
        return f"{self.root}/{_validate_key(key)}"

    def key_for(self, topic: str) -> Optional[str]:
        """Inverse of field(); None for topics outside this document."""
        prefix = f"{self.root}/"
        if not topic.startswith(prefix):
            return None
        key = topic[len(prefix):]
        return key if _KEY_RE.fullmatch(key) else None
