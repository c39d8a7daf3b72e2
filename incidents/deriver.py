"""
Derive reliability incidents from a repository's workflow run timeline.

Every ``failure`` run opens an incident at its own ``created_at``. The
incident is resolved by the nearest later run whose conclusion is literally
``success``; runs with any other conclusion (cancelled, skipped, ...) neither
open nor close anything. Consecutive failures each open their own incident
and share the same resolving run.

All runs of a repository form one timeline, regardless of workflow or branch.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from models.data_models import Incident, WorkflowRun
from storage.supabase_client import QueryFilter, RecordKind
from utils.identity import INCIDENT_NAMESPACE, incident_key_for_run, resolve
from utils.logger import setup_logger
from utils.timeutils import ensure_utc

logger = setup_logger(__name__)

# Owned by the provider; a derived upsert onto the same id must not blank them
PROVIDER_FIELDS = {
    "pull_request_id", "pr_no", "title", "status", "incident_type",
    "url", "provider", "summary", "assigned_to",
}


def incident_id_for_run(run: WorkflowRun) -> str:
    """Stable incident id for a failing run (external run number when known)."""
    natural = run.run_id if run.run_id is not None else run.id
    return resolve(INCIDENT_NAMESPACE, incident_key_for_run(natural))


def _as_run(row: Union[WorkflowRun, Dict[str, Any]]) -> Optional[WorkflowRun]:
    if isinstance(row, WorkflowRun):
        return row
    try:
        return WorkflowRun.model_validate(row)
    except ValidationError as e:
        logger.debug(f"Ignoring unreadable workflow run row: {e}")
        return None


def derive_incidents(
    runs: Iterable[Union[WorkflowRun, Dict[str, Any]]],
    repo_id: str,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None
) -> List[Incident]:
    """
    Pair failing runs with their recovery.

    The resolving success is searched over the whole run list, including runs
    after ``window_end``; only the returned incidents are restricted to those
    created inside the window.

    Args:
        runs: Workflow runs of one repository, any order
        repo_id: Repository the incidents belong to
        window_start: Inclusive lower bound on creation_date (None = unbounded)
        window_end: Inclusive upper bound on creation_date (None = unbounded)

    Returns:
        Incidents ordered by creation_date
    """
    timeline = [run for run in (_as_run(r) for r in runs) if run and run.created_at]
    # sorted() is stable, so runs sharing a timestamp keep their input order
    timeline.sort(key=lambda run: run.created_at)

    start = ensure_utc(window_start) if window_start else None
    end = ensure_utc(window_end) if window_end else None

    # Walk backwards so each failure sees the nearest later success in O(1)
    next_success: Optional[WorkflowRun] = None
    incidents: List[Incident] = []
    for run in reversed(timeline):
        if run.is_success:
            next_success = run
            continue
        if not run.is_failure:
            continue
        if not _in_window(run, start, end):
            continue

        incidents.append(Incident(
            id=incident_id_for_run(run),
            repo_id=repo_id,
            fetch_data_id=run.fetch_data_id,
            workflow_run_id=run.id,
            creation_date=run.created_at,
            resolved_date=next_success.created_at if next_success else None,
        ))

    incidents.reverse()
    return incidents


def _in_window(run: WorkflowRun, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start and run.created_at < start:
        return False
    if end and run.created_at > end:
        return False
    return True


def recovered_runs(
    runs: Iterable[Union[WorkflowRun, Dict[str, Any]]],
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None
) -> List[WorkflowRun]:
    """Runs inside the window whose conclusion is not ``failure`` (e.g. a re-run that passed)."""
    start = ensure_utc(window_start) if window_start else None
    end = ensure_utc(window_end) if window_end else None
    return [
        run for run in (_as_run(r) for r in runs)
        if run and run.created_at and not run.is_failure and _in_window(run, start, end)
    ]


class IncidentDeriver:
    """Load a repository's runs, derive incidents and upsert them."""

    def __init__(self, store):
        self.store = store

    def load_runs(self, repo_id: str) -> List[WorkflowRun]:
        rows = self.store.query(
            RecordKind.WORKFLOW_RUNS,
            [QueryFilter.eq("repo_id", repo_id), QueryFilter.not_null("created_at")],
            order_by="created_at"
        )
        return [run for run in (_as_run(row) for row in rows) if run]

    def _remove_recovered(self, repo_id: str, runs: List[WorkflowRun]) -> int:
        if not runs:
            return 0
        run_ids = {run.id for run in runs}
        rows = self.store.query(
            RecordKind.INCIDENTS,
            [QueryFilter.eq("repo_id", repo_id), QueryFilter.not_null("workflow_run_id")],
            columns="id, workflow_run_id"
        )
        stale_ids = [row["id"] for row in rows if row.get("workflow_run_id") in run_ids]
        if not stale_ids:
            return 0
        removed = self.store.delete_where(
            RecordKind.INCIDENTS,
            [QueryFilter.eq("repo_id", repo_id), QueryFilter.in_("id", stale_ids)]
        )
        logger.info(f"Removed {removed} incidents for repo {repo_id} whose run no longer fails")
        return removed

    def derive(
        self,
        repo_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None
    ) -> List[Incident]:
        """
        Derive and persist incidents for one repository.

        Re-running replaces the previous derivation. Incidents whose
        triggering run (inside the window, when one is given) no longer
        failed are deleted, and the current set is upserted. Provider-reported
        fields on a shared ``workflow-<n>`` incident are left as they are.

        Raises:
            Exception if the store read or write fails
        """
        runs = self.load_runs(repo_id)
        incidents = derive_incidents(runs, repo_id, window_start, window_end)
        self._remove_recovered(repo_id, recovered_runs(runs, window_start, window_end))

        if incidents:
            self.store.upsert(
                RecordKind.INCIDENTS,
                [incident.model_dump(mode="json", exclude=PROVIDER_FIELDS) for incident in incidents],
                on_conflict="id"
            )

        resolved = sum(1 for incident in incidents if incident.resolved_date)
        logger.info(
            f"Derived {len(incidents)} incidents for repo {repo_id} from {len(runs)} runs "
            f"({resolved} resolved, {len(incidents) - resolved} open)"
        )
        return incidents
