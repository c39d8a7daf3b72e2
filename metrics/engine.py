"""
Metrics engine: load a team's rows per period and compute DORA metrics.

Reads only. Each row kind is loaded independently and each statistic falls
back to its zero value when a row kind it needs could not be loaded, so a
failing pull_requests query still leaves CFR and MTTR intact (and vice versa).
"""

from typing import Callable, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError

from metrics.branch_filter import branch_filter_active, filter_by_branch_mode
from metrics.calculations import (
    ChangeFailureRateStats,
    DeploymentFrequencyStats,
    DoraMetricsReport,
    LeadTimeStats,
    MeanTimeToRecoveryStats,
    PeriodComparison,
    change_failure_rate_stats,
    change_failure_rate_trends,
    compare_frequency,
    deployment_frequency_stats,
    deployment_trends,
    lead_time_stats,
    lead_time_trends,
    mean_time_to_recovery_stats,
    mean_time_to_recovery_trends,
)
from models.data_models import BranchMode, Incident, PullRequest, RepoBranchConfig, WorkflowRun
from storage.supabase_client import QueryFilter, RecordKind
from utils.logger import setup_logger
from utils.timeutils import TimeWindow

logger = setup_logger(__name__)

T = TypeVar("T")


class PeriodRows:
    """Filtered rows of one period; None marks a row kind that failed to load."""

    def __init__(
        self,
        window: TimeWindow,
        prs: Optional[List[PullRequest]],
        runs: Optional[List[WorkflowRun]],
        incidents: Optional[List[Incident]]
    ):
        self.window = window
        self.prs = prs
        self.runs = runs
        self.incidents = incidents


class PeriodStats:
    """Statistics and trends computed from one PeriodRows."""

    def __init__(self, rows: PeriodRows):
        prs, runs, incidents = rows.prs, rows.runs, rows.incidents

        self.lead_time = lead_time_stats(prs) if prs is not None else LeadTimeStats()
        self.deployment_frequency = deployment_frequency_stats(
            len(prs) if prs is not None else 0,
            rows.window.days
        )
        if runs is not None and incidents is not None:
            self.change_failure_rate = change_failure_rate_stats(len(incidents), len(runs))
            self.change_failure_rate_trends = change_failure_rate_trends(runs, incidents)
        else:
            self.change_failure_rate = ChangeFailureRateStats()
            self.change_failure_rate_trends = {}
        self.mean_time_to_recovery = (
            mean_time_to_recovery_stats(incidents) if incidents is not None else MeanTimeToRecoveryStats()
        )

        self.lead_time_trends = lead_time_trends(prs) if prs else {}
        self.deployment_trends = deployment_trends(prs) if prs else {}
        self.mean_time_to_recovery_trends = mean_time_to_recovery_trends(incidents) if incidents else {}


def _validate_rows(rows: Sequence[dict], model: Type[T], kind: str) -> List[T]:
    records = []
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable {kind} row {row.get('id')}: {e}")
    return records


class MetricsEngine:
    """Compute DORA metrics for a team over a window and the window before it."""

    def __init__(self, store):
        self.store = store

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_merged_prs(self, repo_ids: Sequence[str], window: TimeWindow) -> List[PullRequest]:
        rows = self.store.query(
            RecordKind.PULL_REQUESTS,
            [
                QueryFilter.in_("repo_id", repo_ids),
                QueryFilter.eq("state", "MERGED"),
                QueryFilter.gte("updated_at", window.start),
                QueryFilter.lte("updated_at", window.end),
            ],
            order_by="updated_at"
        )
        return _validate_rows(rows, PullRequest, "pull request")

    def load_runs(self, repo_ids: Sequence[str], window: TimeWindow) -> List[WorkflowRun]:
        rows = self.store.query(
            RecordKind.WORKFLOW_RUNS,
            [
                QueryFilter.in_("repo_id", repo_ids),
                QueryFilter.gte("created_at", window.start),
                QueryFilter.lte("created_at", window.end),
            ],
            order_by="created_at"
        )
        return _validate_rows(rows, WorkflowRun, "workflow run")

    def load_incidents(self, repo_ids: Sequence[str], window: TimeWindow) -> List[Incident]:
        rows = self.store.query(
            RecordKind.INCIDENTS,
            [
                QueryFilter.in_("repo_id", repo_ids),
                QueryFilter.not_null("creation_date"),
                QueryFilter.gte("creation_date", window.start),
                QueryFilter.lte("creation_date", window.end),
            ],
            order_by="creation_date"
        )
        return _validate_rows(rows, Incident, "incident")

    def _attempt(self, what: str, load: Callable[[], T]) -> Optional[T]:
        try:
            return load()
        except Exception as e:
            logger.error(f"Failed to load {what}, dependent metrics fall back to zero: {e}")
            return None

    def load_period(
        self,
        repo_ids: Sequence[str],
        window: TimeWindow,
        branch_mode: BranchMode,
        repo_branch_map: Dict[str, RepoBranchConfig],
        custom_branches: Optional[Sequence[str]] = None
    ) -> PeriodRows:
        """
        Load and branch-filter every row kind for one window.

        With an active branch mode, incidents survive only if the run that
        triggered them survives the run filter.
        """
        if not repo_ids:
            return PeriodRows(window, [], [], [])

        prs = self._attempt("pull requests", lambda: self.load_merged_prs(repo_ids, window))
        runs = self._attempt("workflow runs", lambda: self.load_runs(repo_ids, window))
        incidents = self._attempt("incidents", lambda: self.load_incidents(repo_ids, window))

        if prs is not None:
            prs = filter_by_branch_mode(
                prs, branch_mode, repo_branch_map,
                branch_field="base_branch", custom_branches=custom_branches
            )
        if runs is not None:
            runs = filter_by_branch_mode(
                runs, branch_mode, repo_branch_map,
                branch_field="head_branch", custom_branches=custom_branches
            )
        if incidents is not None and branch_filter_active(branch_mode, custom_branches):
            if runs is None:
                incidents = None
            else:
                kept_runs = {run.id for run in runs}
                incidents = [i for i in incidents if i.workflow_run_id in kept_runs]

        return PeriodRows(window, prs, runs, incidents)

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def compute_metrics(
        self,
        team_id: str,
        window: TimeWindow,
        branch_mode: BranchMode = BranchMode.ALL,
        custom_branches: Optional[Sequence[str]] = None
    ) -> DoraMetricsReport:
        """
        Compute all four DORA metrics for a team.

        Args:
            team_id: Team whose repos are measured
            window: Inclusive UTC window
            branch_mode: prod / stage / dev / all / custom
            custom_branches: Branch names for custom mode

        Returns:
            DoraMetricsReport with current/previous pairs and trends. Never
            raises for missing data or store errors; affected metrics are zero.
        """
        branch_mode = BranchMode(branch_mode)
        previous_window = window.previous()

        repo_ids = self._attempt("team repos", lambda: self.store.get_team_repo_ids(team_id)) or []
        if not repo_ids:
            logger.warning(f"Team {team_id} has no repos - returning zero metrics")

        repo_branch_map: Dict[str, RepoBranchConfig] = {}
        if repo_ids and branch_mode.branch_key:
            repo_branch_map = self._attempt(
                "repo branch configuration",
                lambda: self.store.get_repo_branch_map(repo_ids)
            ) or {}

        current_rows = self.load_period(repo_ids, window, branch_mode, repo_branch_map, custom_branches)
        previous_rows = self.load_period(repo_ids, previous_window, branch_mode, repo_branch_map, custom_branches)
        current = PeriodStats(current_rows)
        previous = PeriodStats(previous_rows)

        logger.info(
            f"Team {team_id} [{branch_mode.value}] {window.start.date()} -> {window.end.date()}: "
            f"lead_time={current.lead_time.lead_time:.0f}s, "
            f"deployments={current.deployment_frequency.total_deployments}, "
            f"cfr={current.change_failure_rate.change_failure_rate}%, "
            f"mttr={current.mean_time_to_recovery.mean_time_to_recovery:.0f}s"
        )

        return DoraMetricsReport(
            team_id=team_id,
            branch_mode=branch_mode,
            custom_branches=list(custom_branches or []),
            from_time=window.start,
            to_time=window.end,
            previous_from_time=previous_window.start,
            previous_to_time=previous_window.end,
            lead_time=PeriodComparison[LeadTimeStats](
                current=current.lead_time, previous=previous.lead_time
            ),
            deployment_frequency=PeriodComparison[DeploymentFrequencyStats](
                current=current.deployment_frequency,
                previous=compare_frequency(current.deployment_frequency, previous.deployment_frequency),
            ),
            change_failure_rate=PeriodComparison[ChangeFailureRateStats](
                current=current.change_failure_rate, previous=previous.change_failure_rate
            ),
            mean_time_to_recovery=PeriodComparison[MeanTimeToRecoveryStats](
                current=current.mean_time_to_recovery, previous=previous.mean_time_to_recovery
            ),
            lead_time_trends={
                "current": current.lead_time_trends, "previous": previous.lead_time_trends
            },
            deployment_frequency_trends={
                "current": current.deployment_trends, "previous": previous.deployment_trends
            },
            change_failure_rate_trends={
                "current": current.change_failure_rate_trends,
                "previous": previous.change_failure_rate_trends,
            },
            mean_time_to_recovery_trends={
                "current": current.mean_time_to_recovery_trends,
                "previous": previous.mean_time_to_recovery_trends,
            },
            lead_time_prs=current_rows.prs or [],
        )
