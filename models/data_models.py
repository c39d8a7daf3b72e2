"""Canonical data models for pull requests, workflow runs, incidents and fetch batches.

Field validators run in ``before`` mode so upstream payloads can be handed to
``model_validate`` as-is: numeric-like strings become ints, ISO strings and
epoch numbers become aware UTC datetimes, and author/actor objects collapse to
their username. Values that cannot be coerced become None instead of failing
the whole record; only structural problems raise ``ValidationError``.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, field_validator, model_validator

from utils.timeutils import parse_timestamp


def coerce_int(value: Any) -> Optional[int]:
    """Lenient int: accepts ints, integral floats and numeric strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
            return int(number) if math.isfinite(number) else None
    return None


def coerce_float(value: Any) -> Optional[float]:
    """Lenient float: accepts numbers and numeric strings, rejects NaN/inf."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def coerce_username(value: Any) -> Optional[str]:
    """Reduce an author/actor field to a handle (``username`` then ``login``)."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        handle = value.get("username") or value.get("login")
        return handle if isinstance(handle, str) else None
    return None


def coerce_optional_str(value: Any) -> Optional[str]:
    """Keep strings, stringify numbers, drop everything else."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


def strip_enum_prefix(value: Any, prefix: str) -> Optional[str]:
    """Drop a provider enum class prefix, e.g. ``IncidentStatus.RESOLVED`` -> ``RESOLVED``."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    return text[len(prefix):] if text.startswith(prefix) else text


class BranchMode(str, Enum):
    """Which configured environment branch gates inclusion in metrics."""

    PROD = "prod"
    STAGE = "stage"
    DEV = "dev"
    ALL = "all"
    CUSTOM = "custom"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @property
    def branch_key(self) -> Optional[str]:
        """Repo config column for environment modes, None for all/custom."""
        return {
            BranchMode.PROD: "prod_branch",
            BranchMode.STAGE: "stage_branch",
            BranchMode.DEV: "dev_branch",
        }.get(self)


class RepoBranchConfig(BaseModel):
    """Per-repository environment branch names (read-only)."""

    dev_branch: Optional[str] = None
    stage_branch: Optional[str] = None
    prod_branch: Optional[str] = None

    def branch_for(self, mode: BranchMode) -> Optional[str]:
        key = mode.branch_key
        if key is None:
            return None
        branch = getattr(self, key)
        return branch or None


class PullRequest(BaseModel):
    """One change request, keyed by a stable id."""

    id: str
    repo_id: str
    fetch_data_id: Optional[str] = None

    pr_no: Optional[int] = None
    title: Optional[str] = None
    author: Optional[str] = None
    state: Optional[str] = None  # MERGED / OPEN / CLOSED
    base_branch: Optional[str] = None
    head_branch: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    state_changed_at: Optional[datetime] = None
    url: Optional[str] = None
    provider: Optional[str] = None

    # Size metrics
    commits: Optional[int] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    comments: Optional[int] = None

    # Lead time components, in seconds
    first_commit_to_open: Optional[float] = None
    cycle_time: Optional[float] = None
    first_response_time: Optional[float] = None
    rework_time: Optional[float] = None
    merge_time: Optional[float] = None
    merge_to_deploy: Optional[float] = None

    @field_validator("pr_no", "commits", "additions", "deletions", "comments", mode="before")
    @classmethod
    def _lenient_int(cls, v: Any) -> Optional[int]:
        return coerce_int(v)

    @field_validator(
        "first_commit_to_open", "cycle_time", "first_response_time", "rework_time",
        "merge_time", "merge_to_deploy", mode="before"
    )
    @classmethod
    def _lenient_float(cls, v: Any) -> Optional[float]:
        return coerce_float(v)

    @field_validator("created_at", "updated_at", "state_changed_at", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("author", mode="before")
    @classmethod
    def _author_handle(cls, v: Any) -> Optional[str]:
        return coerce_username(v)

    @field_validator("state", mode="before")
    @classmethod
    def _upper_state(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str) or not v.strip():
            return None
        # Provider enums sometimes arrive as "PullRequestState.MERGED"
        return v.strip().split(".")[-1].upper()

    @field_validator("base_branch", "head_branch", "title", "url", "provider", mode="before")
    @classmethod
    def _strings_only(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @property
    def lead_time(self) -> float:
        """first_commit_to_open + cycle_time, missing parts counted as 0."""
        return (self.first_commit_to_open or 0.0) + (self.cycle_time or 0.0)


class WorkflowRun(BaseModel):
    """One CI pipeline execution."""

    id: str
    repo_id: str
    fetch_data_id: Optional[str] = None

    run_id: Optional[int] = None
    name: Optional[str] = None
    head_branch: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    html_url: Optional[str] = None
    actor: Optional[str] = None
    workflow_id: Optional[str] = None

    @field_validator("run_id", mode="before")
    @classmethod
    def _lenient_int(cls, v: Any) -> Optional[int]:
        return coerce_int(v)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("actor", mode="before")
    @classmethod
    def _actor_handle(cls, v: Any) -> Optional[str]:
        return coerce_username(v)

    @field_validator("workflow_id", mode="before")
    @classmethod
    def _workflow_id(cls, v: Any) -> Optional[str]:
        return coerce_optional_str(v)

    @field_validator("name", "head_branch", "status", "conclusion", "html_url", mode="before")
    @classmethod
    def _strings_only(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @property
    def is_failure(self) -> bool:
        return (self.conclusion or "").lower() == "failure"

    @property
    def is_success(self) -> bool:
        return (self.conclusion or "").lower() == "success"


class Incident(BaseModel):
    """A derived (or provider-reported) interval of degraded pipeline health."""

    id: str
    repo_id: str
    fetch_data_id: Optional[str] = None

    workflow_run_id: Optional[str] = None  # stable id of the triggering WorkflowRun
    pull_request_id: Optional[str] = None
    pr_no: Optional[str] = None
    creation_date: Optional[datetime] = None
    resolved_date: Optional[datetime] = None

    # Provider-reported details; derived incidents leave these unset
    title: Optional[str] = None
    status: Optional[str] = None
    incident_type: Optional[str] = None
    url: Optional[str] = None
    provider: Optional[str] = None
    summary: Optional[str] = None
    assigned_to: Optional[str] = None

    @field_validator("creation_date", "resolved_date", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("pr_no", mode="before")
    @classmethod
    def _pr_no(cls, v: Any) -> Optional[str]:
        return coerce_optional_str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Optional[str]:
        return strip_enum_prefix(v, "IncidentStatus.")

    @field_validator("provider", mode="before")
    @classmethod
    def _provider(cls, v: Any) -> Optional[str]:
        return strip_enum_prefix(v, "IncidentProvider.")

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _assignee_handle(cls, v: Any) -> Optional[str]:
        return coerce_username(v)

    @field_validator("title", "incident_type", "url", "summary", mode="before")
    @classmethod
    def _strings_only(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None

    @model_validator(mode="after")
    def _resolved_after_creation(self) -> "Incident":
        if self.creation_date and self.resolved_date and self.resolved_date < self.creation_date:
            raise ValueError("resolved_date must not be earlier than creation_date")
        return self

    @property
    def recovery_seconds(self) -> Optional[float]:
        """Seconds from creation to resolution, None while unresolved."""
        if self.creation_date is None or self.resolved_date is None:
            return None
        return (self.resolved_date - self.creation_date).total_seconds()


class FetchBatch(BaseModel):
    """One ingestion attempt and the raw payload it produced."""

    id: str
    repo_id: str
    fetched_at: Optional[datetime] = None
    state: Literal["processing", "success", "failure"] = "processing"
    raw_response: Optional[Any] = None

    @field_validator("fetched_at", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)
