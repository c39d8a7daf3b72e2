"""Deterministic identifiers for upstream records.

Upstream payloads only sometimes carry UUID ids (pull requests usually do,
workflow runs carry numeric run ids, provider incidents carry ``"None"``).
Every record we store needs an id that is stable across re-ingestion, so
anything that is not already a UUID is hashed from a namespace plus a natural
key that is unique within that namespace.
"""

import hashlib
import re
import uuid
from typing import Any, Optional

PULL_REQUEST_NAMESPACE = "pull_request"
WORKFLOW_RUN_NAMESPACE = "workflow_run"
INCIDENT_NAMESPACE = "incident"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_uuid(value: Any) -> bool:
    """Return True if value is a canonical (hyphenated) UUID string."""
    if value is None:
        return False
    return bool(_UUID_RE.match(str(value)))


def resolve(namespace: str, natural_key: str) -> str:
    """
    Derive a stable UUID from a namespace and a natural key.

    SHA-1 over ``namespace + natural_key``; the first 16 bytes become the UUID
    with the version nibble forced to 5 and the RFC 4122 variant bits set, so
    the result is always a syntactically valid UUID.

    Args:
        namespace: Record namespace (e.g. "workflow_run", "incident")
        natural_key: Key unique within that namespace (e.g. "20118081300")

    Returns:
        Lower-case hyphenated UUID string
    """
    digest = hashlib.sha1(f"{namespace}{natural_key}".encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest[:16], version=5))


def stable_id(upstream_id: Any, namespace: str, natural_key: Optional[str]) -> Optional[str]:
    """
    Pick the id to store for an upstream record.

    A valid upstream UUID is used unchanged. Otherwise the id is resolved from
    the natural key. Returns None when there is nothing to derive an id from;
    callers drop such records rather than inventing a random id.
    """
    if is_uuid(upstream_id):
        return str(upstream_id).lower()
    if natural_key is None or natural_key == "":
        return None
    return resolve(namespace, natural_key)


def workflow_run_id(run_id: Any) -> str:
    """Stable id of the WorkflowRun with the given external run number."""
    return resolve(WORKFLOW_RUN_NAMESPACE, str(run_id))


def incident_key_for_run(run_id: Any) -> str:
    """Natural key of the incident opened by a failing run."""
    return f"workflow-{run_id}"
