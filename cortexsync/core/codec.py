"""YAML serialization and content fingerprints for stored objects."""

import hashlib
from typing import Any

import yaml


def encode(obj: Any) -> str:
    """Serialize an object to canonical YAML.

    Keys are sorted so the same content always produces the same text,
    whatever order the API returned fields in.
    """
    return yaml.safe_dump(
        obj,
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )


def decode(text: str | bytes) -> Any:
    """Parse YAML (or JSON) text."""
    return yaml.safe_load(text)


def compute_hash(content: str) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def fingerprint(obj: Any) -> str:
    """Digest of an object's canonical serialization."""
    return compute_hash(encode(obj))
