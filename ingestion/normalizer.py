"""
Normalize raw fetch-service payloads into canonical records.

Payload shape (every level optional, wrapped in ``data`` or not):

    {"repos": [{"org_name", "repo_name", "error"?,
                "pull_requests": [...],
                "deployments": [{"related_prs": [...]}],
                "workflow_runs": [...],
                "incidents": [...]}]}

Each repos[] entry is classified as a RepoSection or a SkippedSection before
anything is read from it. Inside a section every record is validated on its
own; a bad record is dropped and counted, never fatal to the batch.

Ids are deterministic (see utils.identity), so ingesting the same payload
twice upserts the same rows.
"""

import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError

from models.data_models import Incident, PullRequest, WorkflowRun, coerce_int
from storage.supabase_client import RecordKind
from utils.identity import (
    INCIDENT_NAMESPACE,
    PULL_REQUEST_NAMESPACE,
    WORKFLOW_RUN_NAMESPACE,
    is_uuid,
    stable_id,
    workflow_run_id,
)
from utils.logger import setup_logger

logger = setup_logger(__name__)

_RUN_NAME_RE = re.compile(r"Run\s+(\d+)", re.IGNORECASE)
_WORKFLOW_KEY_RE = re.compile(r"workflow-(\d+)", re.IGNORECASE)


class RepoSection(BaseModel):
    """A usable repos[] entry."""

    label: str
    pull_requests: List[Any] = Field(default_factory=list)
    workflow_runs: List[Any] = Field(default_factory=list)
    incidents: List[Any] = Field(default_factory=list)


class SkippedSection(BaseModel):
    """A repos[] entry that must not be read."""

    label: str
    reason: str


Section = Union[RepoSection, SkippedSection]


class NormalizedBatch(BaseModel):
    """Records extracted from one payload, ready to upsert."""

    pull_requests: List[PullRequest] = Field(default_factory=list)
    workflow_runs: List[WorkflowRun] = Field(default_factory=list)
    incidents: List[Incident] = Field(default_factory=list)
    skipped_records: Dict[str, int] = Field(
        default_factory=lambda: {"pull_requests": 0, "workflow_runs": 0, "incidents": 0}
    )
    skipped_sections: int = 0

    @property
    def skipped_count(self) -> int:
        return sum(self.skipped_records.values())

    @property
    def is_empty(self) -> bool:
        return not (self.pull_requests or self.workflow_runs or self.incidents)


class IngestResult(BaseModel):
    """Outcome of writing one payload to the store."""

    pull_requests: int = 0
    workflow_runs: int = 0
    incidents: int = 0
    skipped_records: int = 0
    skipped_sections: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _payload_root(raw_payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw_payload, dict):
        return None
    data = raw_payload.get("data")
    return data if isinstance(data, dict) else raw_payload


def classify_section(entry: Any, index: int) -> Section:
    """Tag one repos[] entry as usable or skipped."""
    if not isinstance(entry, dict):
        return SkippedSection(label=f"repos[{index}]", reason=f"not an object ({type(entry).__name__})")

    org = entry.get("org_name") or entry.get("repo_org")
    name = entry.get("repo_name")
    label = f"{org}/{name}" if org and name else f"repos[{index}]"

    if entry.get("error"):
        return SkippedSection(label=label, reason=f"upstream error: {str(entry['error'])[:200]}")

    pull_requests = list(_as_list(entry.get("pull_requests")))
    for deployment in _as_list(entry.get("deployments")):
        if isinstance(deployment, dict):
            pull_requests.extend(_as_list(deployment.get("related_prs")))

    return RepoSection(
        label=label,
        pull_requests=pull_requests,
        workflow_runs=_as_list(entry.get("workflow_runs")),
        incidents=_as_list(entry.get("incidents")),
    )


def iter_sections(raw_payload: Any) -> Iterator[Section]:
    """Yield every section of a payload, including a top-level workflow_runs list."""
    root = _payload_root(raw_payload)
    if root is None:
        return

    for index, entry in enumerate(_as_list(root.get("repos"))):
        yield classify_section(entry, index)

    top_level_runs = _as_list(root.get("workflow_runs"))
    if top_level_runs:
        yield RepoSection(label="workflow_runs", workflow_runs=top_level_runs)


def _pr_number(raw: Dict[str, Any]) -> Optional[int]:
    for key in ("number", "no", "pr_no"):
        number = coerce_int(raw.get(key))
        if number is not None:
            return number
    return None


def _raw_run_id(raw: Dict[str, Any]) -> Any:
    for key in ("id", "run_id"):
        value = raw.get(key)
        if value is not None and value != "":
            return value
    name = raw.get("name")
    if isinstance(name, str):
        match = _RUN_NAME_RE.search(name)
        if match:
            return match.group(1)
    return None


def build_pull_request(raw: Any, repo_id: str, batch_id: str) -> Optional[PullRequest]:
    """Map one upstream PR to a PullRequest, or None if it cannot be keyed or timed."""
    if not isinstance(raw, dict):
        return None

    number = _pr_number(raw)
    pr_id = stable_id(
        raw.get("id"),
        PULL_REQUEST_NAMESPACE,
        f"{repo_id}:{number}" if number is not None else None
    )
    if pr_id is None:
        return None

    try:
        pr = PullRequest.model_validate({
            "id": pr_id,
            "repo_id": repo_id,
            "fetch_data_id": batch_id,
            "pr_no": number,
            "title": raw.get("title"),
            "author": raw.get("author"),
            "state": raw.get("state"),
            "base_branch": raw.get("base_branch"),
            "head_branch": raw.get("head_branch"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
            "state_changed_at": raw.get("state_changed_at"),
            "url": raw.get("url"),
            "provider": raw.get("provider"),
            "commits": raw.get("commits"),
            "additions": raw.get("additions"),
            "deletions": raw.get("deletions"),
            "comments": raw.get("comments"),
            "first_commit_to_open": raw.get("first_commit_to_open"),
            "cycle_time": raw.get("cycle_time"),
            "first_response_time": raw.get("first_response_time"),
            "rework_time": raw.get("rework_time"),
            "merge_time": raw.get("merge_time"),
            "merge_to_deploy": raw.get("merge_to_deploy"),
        })
    except ValidationError as e:
        logger.debug(f"PR #{number} failed validation: {e}")
        return None

    if pr.created_at is None and pr.updated_at is None:
        return None
    return pr


def build_workflow_run(raw: Any, repo_id: str, batch_id: str) -> Optional[WorkflowRun]:
    """Map one upstream run to a WorkflowRun, or None if it has no id or timestamp."""
    if not isinstance(raw, dict):
        return None

    raw_id = _raw_run_id(raw)
    if raw_id is None:
        return None

    if is_uuid(raw_id):
        run_number = coerce_int(raw.get("run_id"))
        run_id = str(raw_id).lower()
    else:
        run_number = coerce_int(raw_id)
        run_id = stable_id(None, WORKFLOW_RUN_NAMESPACE, str(raw_id))

    try:
        run = WorkflowRun.model_validate({
            "id": run_id,
            "repo_id": repo_id,
            "fetch_data_id": batch_id,
            "run_id": run_number,
            "name": raw.get("name") or raw.get("workflow_name"),
            "head_branch": raw.get("head_branch"),
            "status": raw.get("status"),
            "conclusion": raw.get("conclusion"),
            "created_at": raw.get("created_at"),
            "updated_at": raw.get("updated_at"),
            "html_url": raw.get("html_url") or raw.get("url"),
            "actor": raw.get("actor"),
            "workflow_id": raw.get("workflow_id"),
        })
    except ValidationError as e:
        logger.debug(f"Workflow run {raw_id} failed validation: {e}")
        return None

    if run.created_at is None:
        return None
    return run


def build_incident(raw: Any, repo_id: str, batch_id: str) -> Optional[Incident]:
    """Map one provider-reported incident, keyed by its id or its ``key`` field."""
    if not isinstance(raw, dict):
        return None

    key = raw.get("key") if isinstance(raw.get("key"), str) else None
    incident_id = stable_id(raw.get("id"), INCIDENT_NAMESPACE, key)
    if incident_id is None:
        return None

    run_ref = None
    if key:
        match = _WORKFLOW_KEY_RE.search(key)
        if match:
            run_ref = workflow_run_id(int(match.group(1)))

    try:
        incident = Incident.model_validate({
            "id": incident_id,
            "repo_id": repo_id,
            "fetch_data_id": batch_id,
            "workflow_run_id": run_ref,
            "pull_request_id": raw.get("pull_request_id") if is_uuid(raw.get("pull_request_id")) else None,
            "pr_no": raw.get("incident_number"),
            "creation_date": raw.get("creation_date"),
            "resolved_date": raw.get("resolved_date"),
            "title": raw.get("title"),
            "status": raw.get("status"),
            "incident_type": raw.get("incident_type"),
            "url": raw.get("url"),
            "provider": raw.get("provider"),
            "summary": raw.get("summary"),
            "assigned_to": raw.get("assigned_to"),
        })
    except ValidationError as e:
        logger.debug(f"Incident {key or raw.get('id')} failed validation: {e}")
        return None

    if incident.creation_date is None:
        return None
    return incident


def normalize_payload(raw_payload: Any, repo_id: str, batch_id: str) -> NormalizedBatch:
    """
    Extract canonical records from a raw payload.

    PRs are deduplicated by number across the whole payload (first occurrence
    wins, so repos[].pull_requests beat the same PR repeated under
    deployments[].related_prs). Runs and incidents are deduplicated by id.

    Args:
        raw_payload: Decoded fetch-service response
        repo_id: Repository the batch belongs to
        batch_id: FetchBatch id stamped on every record

    Returns:
        NormalizedBatch with records and drop counters
    """
    batch = NormalizedBatch()
    seen_pr_keys = set()
    seen_run_ids = set()
    seen_incident_ids = set()
    sections = 0

    for section in iter_sections(raw_payload):
        sections += 1
        if isinstance(section, SkippedSection):
            batch.skipped_sections += 1
            logger.warning(f"Skipping section {section.label}: {section.reason}")
            continue

        for raw in section.pull_requests:
            pr = build_pull_request(raw, repo_id, batch_id)
            if pr is None:
                batch.skipped_records["pull_requests"] += 1
                logger.warning(f"{section.label}: dropping PR without usable number/id or timestamp")
                continue
            dedup_key = pr.pr_no if pr.pr_no is not None else pr.id
            if dedup_key in seen_pr_keys:
                continue
            seen_pr_keys.add(dedup_key)
            batch.pull_requests.append(pr)

        for raw in section.workflow_runs:
            run = build_workflow_run(raw, repo_id, batch_id)
            if run is None:
                batch.skipped_records["workflow_runs"] += 1
                logger.warning(f"{section.label}: dropping workflow run without id or created_at")
                continue
            if run.id in seen_run_ids:
                continue
            seen_run_ids.add(run.id)
            batch.workflow_runs.append(run)

        for raw in section.incidents:
            incident = build_incident(raw, repo_id, batch_id)
            if incident is None:
                batch.skipped_records["incidents"] += 1
                logger.warning(f"{section.label}: dropping incident without id/key or creation_date")
                continue
            if incident.id in seen_incident_ids:
                continue
            seen_incident_ids.add(incident.id)
            batch.incidents.append(incident)

    if sections == 0:
        logger.info(f"No repo sections in payload for batch {batch_id} - nothing to do")
    else:
        logger.info(
            f"Normalized batch {batch_id}: {len(batch.pull_requests)} PRs, "
            f"{len(batch.workflow_runs)} workflow runs, {len(batch.incidents)} incidents "
            f"({batch.skipped_count} records and {batch.skipped_sections} sections skipped)"
        )
    return batch


def _dump(records: Sequence[Any]) -> List[Dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


def ingest_payload(store, raw_payload: Any, repo_id: str, batch_id: str) -> IngestResult:
    """
    Normalize a payload and upsert its records.

    Each record kind is written independently: a failure writing incidents
    leaves PRs and runs in place and is reported in ``result.errors``.

    Args:
        store: SupabaseClient (or anything with the same ``upsert``)
        raw_payload: Decoded fetch-service response
        repo_id: Repository the batch belongs to
        batch_id: FetchBatch id

    Returns:
        IngestResult with per-kind written counts and errors
    """
    normalized = normalize_payload(raw_payload, repo_id, batch_id)
    result = IngestResult(
        skipped_records=normalized.skipped_count,
        skipped_sections=normalized.skipped_sections,
    )

    writes = (
        ("pull_requests", RecordKind.PULL_REQUESTS, normalized.pull_requests),
        ("workflow_runs", RecordKind.WORKFLOW_RUNS, normalized.workflow_runs),
        ("incidents", RecordKind.INCIDENTS, normalized.incidents),
    )
    for attr, kind, records in writes:
        if not records:
            continue
        try:
            written = store.upsert(kind, _dump(records), on_conflict="id")
        except Exception as e:
            result.errors[attr] = str(e)
            logger.error(f"Batch {batch_id}: failed to write {attr}: {e}")
            continue
        setattr(result, attr, written)

    logger.info(
        f"Ingested batch {batch_id}: {result.pull_requests} PRs, "
        f"{result.workflow_runs} workflow runs, {result.incidents} incidents"
        + (f", errors in {', '.join(result.errors)}" if result.errors else "")
    )
    return result
