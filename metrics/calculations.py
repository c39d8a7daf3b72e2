"""
Pure DORA statistics and the result models the metrics engine returns.

Nothing here touches the store. Inputs are already-filtered model rows; every
function returns a zero-valued result for empty input rather than raising.
"""

import math
from datetime import datetime
from typing import Dict, Generic, List, Literal, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from models.data_models import BranchMode, Incident, PullRequest, WorkflowRun
from utils.timeutils import iso_date

FrequencyUnit = Literal["day", "week", "month"]

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30

StatsT = TypeVar("StatsT")


def round2(value: float) -> float:
    return round(value, 2)


# ----------------------------------------------------------------------
# Result models
# ----------------------------------------------------------------------

class LeadTimeStats(BaseModel):
    """Mean lead time and its components, in seconds."""

    lead_time: float = 0.0
    first_commit_to_open: float = 0.0
    cycle_time: float = 0.0
    first_response_time: float = 0.0
    rework_time: float = 0.0
    merge_time: float = 0.0
    merge_to_deploy: float = 0.0
    pr_count: int = 0


class DeploymentCount(BaseModel):
    count: int = 0


class DeploymentFrequencyStats(BaseModel):
    """Merged PR count over a window and the rates derived from it."""

    total_deployments: int = 0
    days: int = 1
    avg_daily_deployment_frequency: float = 0.0
    avg_weekly_deployment_frequency: float = 0.0
    avg_monthly_deployment_frequency: float = 0.0
    unit: FrequencyUnit = "month"
    frequency: float = 0.0
    # Rate in another period's unit, set on the previous period for comparison
    comparable_frequency: Optional[float] = None

    def rate_in(self, unit: FrequencyUnit) -> float:
        return {
            "day": self.avg_daily_deployment_frequency,
            "week": self.avg_weekly_deployment_frequency,
            "month": self.avg_monthly_deployment_frequency,
        }[unit]


class ChangeFailureRateStats(BaseModel):
    """Incidents per workflow run, as a percentage."""

    change_failure_rate: float = 0.0
    failed_deployments: int = 0
    total_deployments: int = 0


class MeanTimeToRecoveryStats(BaseModel):
    """Mean resolved - created seconds over resolved incidents."""

    mean_time_to_recovery: float = 0.0
    incident_count: int = 0


class PeriodComparison(BaseModel, Generic[StatsT]):
    """The same computation over the requested window and the one before it."""

    current: StatsT
    previous: StatsT


class DailyMetricSnapshot(BaseModel):
    """All four metrics for one calendar day; absent metrics had no rows."""

    date: str
    lead_time: Optional[LeadTimeStats] = None
    deployments: int = 0
    change_failure_rate: Optional[ChangeFailureRateStats] = None
    mean_time_to_recovery: Optional[MeanTimeToRecoveryStats] = None


class DoraMetricsReport(BaseModel):
    """Everything the presentation layer needs for one team and window."""

    team_id: str
    branch_mode: BranchMode = BranchMode.ALL
    custom_branches: List[str] = Field(default_factory=list)
    from_time: datetime
    to_time: datetime
    previous_from_time: datetime
    previous_to_time: datetime

    lead_time: PeriodComparison[LeadTimeStats]
    deployment_frequency: PeriodComparison[DeploymentFrequencyStats]
    change_failure_rate: PeriodComparison[ChangeFailureRateStats]
    mean_time_to_recovery: PeriodComparison[MeanTimeToRecoveryStats]

    lead_time_trends: PeriodComparison[Dict[str, LeadTimeStats]]
    deployment_frequency_trends: PeriodComparison[Dict[str, DeploymentCount]]
    change_failure_rate_trends: PeriodComparison[Dict[str, ChangeFailureRateStats]]
    mean_time_to_recovery_trends: PeriodComparison[Dict[str, MeanTimeToRecoveryStats]]

    lead_time_prs: List[PullRequest] = Field(default_factory=list)

    def trends(self) -> Dict[str, DailyMetricSnapshot]:
        """Current-period trends merged per day, ordered by date."""
        lead = self.lead_time_trends.current
        deployments = self.deployment_frequency_trends.current
        cfr = self.change_failure_rate_trends.current
        mttr = self.mean_time_to_recovery_trends.current

        days = sorted(set(lead) | set(deployments) | set(cfr) | set(mttr))
        return {
            day: DailyMetricSnapshot(
                date=day,
                lead_time=lead.get(day),
                deployments=deployments[day].count if day in deployments else 0,
                change_failure_rate=cfr.get(day),
                mean_time_to_recovery=mttr.get(day),
            )
            for day in days
        }


# ----------------------------------------------------------------------
# Statistics
# ----------------------------------------------------------------------

def lead_time_stats(prs: Sequence[PullRequest]) -> LeadTimeStats:
    """
    Mean of first_commit_to_open + cycle_time; missing parts count as 0.

    The finer components (response, rework, merge, merge-to-deploy) are
    reported as plain means alongside and do not feed ``lead_time``.
    """
    if not prs:
        return LeadTimeStats()
    n = len(prs)

    def mean(attr: str) -> float:
        return sum(getattr(pr, attr) or 0.0 for pr in prs) / n

    fco = mean("first_commit_to_open")
    cycle = mean("cycle_time")
    return LeadTimeStats(
        lead_time=fco + cycle,
        first_commit_to_open=fco,
        cycle_time=cycle,
        first_response_time=mean("first_response_time"),
        rework_time=mean("rework_time"),
        merge_time=mean("merge_time"),
        merge_to_deploy=mean("merge_to_deploy"),
        pr_count=n,
    )


def select_frequency_unit(daily: float, weekly: float) -> FrequencyUnit:
    """day if the daily rate reaches 1, else week if the weekly rate does, else month."""
    if daily >= 1:
        return "day"
    if weekly >= 1:
        return "week"
    return "month"


def deployment_frequency_stats(
    total_deployments: int,
    days: int,
    unit: Optional[FrequencyUnit] = None
) -> DeploymentFrequencyStats:
    """
    Rates of ``total_deployments`` over ``days``.

    Args:
        total_deployments: Merged PR count
        days: Window length in days (clamped to at least 1)
        unit: Force a display unit instead of selecting one

    Returns:
        DeploymentFrequencyStats with all three rates rounded to 2 decimals
    """
    days = max(1, days)
    daily = round2(total_deployments / days)
    weekly = round2(total_deployments / (days / DAYS_PER_WEEK))
    monthly = round2(total_deployments / (days / DAYS_PER_MONTH))
    stats = DeploymentFrequencyStats(
        total_deployments=total_deployments,
        days=days,
        avg_daily_deployment_frequency=daily,
        avg_weekly_deployment_frequency=weekly,
        avg_monthly_deployment_frequency=monthly,
        unit=unit or select_frequency_unit(daily, weekly),
    )
    stats.frequency = stats.rate_in(stats.unit)
    return stats


def compare_frequency(
    current: DeploymentFrequencyStats,
    previous: DeploymentFrequencyStats
) -> DeploymentFrequencyStats:
    """Previous-period stats with comparable_frequency in the current period's unit."""
    return previous.model_copy(update={"comparable_frequency": previous.rate_in(current.unit)})


def change_failure_rate_stats(incident_count: int, run_count: int) -> ChangeFailureRateStats:
    """incidents / runs * 100, rounded to 2 decimals, 0 without runs."""
    if run_count <= 0:
        return ChangeFailureRateStats(failed_deployments=incident_count, total_deployments=0)
    rate = min(100.0, round2(incident_count / run_count * 100))
    return ChangeFailureRateStats(
        change_failure_rate=rate,
        failed_deployments=incident_count,
        total_deployments=run_count,
    )


def _recovery_durations(incidents: Sequence[Incident]) -> List[float]:
    durations = []
    for incident in incidents:
        seconds = incident.recovery_seconds
        if seconds is not None and math.isfinite(seconds) and seconds >= 0:
            durations.append(seconds)
    return durations


def mean_time_to_recovery_stats(incidents: Sequence[Incident]) -> MeanTimeToRecoveryStats:
    """Unresolved incidents are left out of the mean, not counted as 0."""
    durations = _recovery_durations(incidents)
    if not durations:
        return MeanTimeToRecoveryStats()
    return MeanTimeToRecoveryStats(
        mean_time_to_recovery=sum(durations) / len(durations),
        incident_count=len(durations),
    )


# ----------------------------------------------------------------------
# Trends (sparse: days without rows are absent)
# ----------------------------------------------------------------------

def lead_time_trends(prs: Sequence[PullRequest]) -> Dict[str, LeadTimeStats]:
    by_day: Dict[str, List[PullRequest]] = {}
    for pr in prs:
        if pr.updated_at is None:
            continue
        by_day.setdefault(iso_date(pr.updated_at), []).append(pr)
    return {day: lead_time_stats(day_prs) for day, day_prs in sorted(by_day.items())}


def deployment_trends(prs: Sequence[PullRequest]) -> Dict[str, DeploymentCount]:
    counts: Dict[str, int] = {}
    for pr in prs:
        if pr.updated_at is None:
            continue
        day = iso_date(pr.updated_at)
        counts[day] = counts.get(day, 0) + 1
    return {day: DeploymentCount(count=count) for day, count in sorted(counts.items())}


def change_failure_rate_trends(
    runs: Sequence[WorkflowRun],
    incidents: Sequence[Incident]
) -> Dict[str, ChangeFailureRateStats]:
    totals: Dict[str, int] = {}
    failed: Dict[str, int] = {}
    for run in runs:
        if run.created_at is not None:
            day = iso_date(run.created_at)
            totals[day] = totals.get(day, 0) + 1
    for incident in incidents:
        if incident.creation_date is not None:
            day = iso_date(incident.creation_date)
            failed[day] = failed.get(day, 0) + 1

    return {
        day: change_failure_rate_stats(failed.get(day, 0), totals.get(day, 0))
        for day in sorted(set(totals) | set(failed))
    }


def mean_time_to_recovery_trends(incidents: Sequence[Incident]) -> Dict[str, MeanTimeToRecoveryStats]:
    by_day: Dict[str, List[Incident]] = {}
    for incident in incidents:
        if incident.creation_date is None or incident.recovery_seconds is None:
            continue
        by_day.setdefault(iso_date(incident.creation_date), []).append(incident)
    return {day: mean_time_to_recovery_stats(day_incidents) for day, day_incidents in sorted(by_day.items())}
