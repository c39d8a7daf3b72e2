#!/usr/bin/env python3
"""
DORA Pipeline - Main CLI entrypoint

Fetches pull requests, workflow runs and incidents for configured repositories
through the provider fetch service, stores them in Supabase, derives incidents
from workflow run history, and computes DORA metrics for a team.

Usage:
    python main.py fetch <repo-id>                        # one repository
    python main.py fetch <team-id> --team                 # every repo of a team
    python main.py reparse <repo-id>                      # rebuild latest successful batch
    python main.py backfill [--force] [--dry-run]         # re-parse stored batches
    python main.py incidents <repo-id>                    # re-derive incidents
    python main.py metrics <team-id> --from 2025-01-01 --to 2025-01-31 --branch-mode prod
"""

import argparse
import sys
from datetime import date, timedelta
from typing import Optional

from fetchers.lambda_client import LambdaFetchClient
from incidents.deriver import IncidentDeriver
from ingestion.pipeline import FetchPipeline, PipelineError
from metrics.engine import MetricsEngine
from models.data_models import BranchMode
from storage.cache import FetchCache
from storage.supabase_client import SupabaseClient
from utils.config_loader import load_config
from utils.logger import setup_logger
from utils.timeutils import TimeWindow, utcnow

logger = setup_logger(__name__)


def build_pipeline(config, supabase: SupabaseClient) -> FetchPipeline:
    """Wire fetch client, optional cache and store into a FetchPipeline."""
    fetch_client = LambdaFetchClient(
        github_url=config.credentials.lambda_fetch_url,
        bitbucket_url=config.credentials.bitbucket_lambda_fetch_url,
    )
    cache = FetchCache.from_url(config.credentials.redis_url, ttl_seconds=config.fetch_cache_ttl)
    return FetchPipeline(
        supabase,
        fetch_client,
        cache=cache,
        max_workers=config.fetch_workers,
        default_days_prior=config.fetch_days_prior,
    )


def run_fetch(
    pipeline: FetchPipeline,
    target_id: str,
    team: bool = False,
    days_prior: Optional[int] = None,
    timeout: Optional[float] = None
) -> bool:
    """
    Start fetches and wait for them to finish.

    Returns:
        bool: True if every started batch ended in success
    """
    logger.info("=" * 80)
    logger.info(f"FETCHING: {'team' if team else 'repo'} {target_id}")
    logger.info("=" * 80)

    if team:
        batches = pipeline.start_team_fetch(target_id, days_prior)
        if not batches:
            logger.error(f"Team {target_id} has no repos")
            return False
    else:
        try:
            batches = {target_id: pipeline.start_fetch(target_id, days_prior)}
        except PipelineError as e:
            logger.error(f"✗ {e}")
            return False

    if not pipeline.wait(timeout=timeout):
        logger.warning("Timed out waiting for fetches; unfinished batches are still processing")

    logger.info("\n" + "=" * 80)
    logger.info("SUMMARY")
    logger.info("=" * 80)

    all_ok = True
    for repo_id, batch_id in batches.items():
        if batch_id is None:
            logger.info(f"  {repo_id}: not started")
            all_ok = False
            continue
        state = pipeline.get_batch_state(batch_id)
        marker = "✓" if state == "success" else "✗"
        logger.info(f"  {marker} {repo_id}: batch {batch_id} -> {state}")
        all_ok = all_ok and state == "success"

    return all_ok


def run_reparse(pipeline: FetchPipeline, repo_id: str) -> bool:
    try:
        result = pipeline.reparse_latest(repo_id)
    except PipelineError as e:
        logger.error(f"✗ {e}")
        return False

    logger.info(
        f"✓ Re-parsed: {result.pull_requests} PRs, {result.workflow_runs} workflow runs, "
        f"{result.incidents} incidents ({result.skipped_records} records skipped)"
    )
    if not result.ok:
        logger.error(f"✗ Write errors: {result.errors}")
    return result.ok


def run_backfill(pipeline: FetchPipeline, batch_id: Optional[str], force: bool, dry_run: bool) -> bool:
    summary = pipeline.backfill(batch_id=batch_id, force=force, dry_run=dry_run)

    logger.info("\n" + "=" * 80)
    logger.info("BACKFILL SUMMARY" + (" (dry run - nothing written)" if dry_run else ""))
    logger.info("=" * 80)
    logger.info(f"Batches processed: {summary.processed}")
    logger.info(f"Batches skipped: {summary.skipped}")
    logger.info(f"Batches failed: {summary.failed}")
    logger.info(f"PRs: {summary.pull_requests}")
    logger.info(f"Workflow runs: {summary.workflow_runs}")
    logger.info(f"Incidents: {summary.incidents}")

    if summary.skipped and not force:
        logger.info("\nBatches that already have PRs were skipped. Use --force to re-process them.")
    return summary.failed == 0


def run_incidents(supabase: SupabaseClient, repo_id: str) -> bool:
    try:
        incidents = IncidentDeriver(supabase).derive(repo_id)
    except Exception as e:
        logger.error(f"✗ Failed to derive incidents: {e}")
        return False
    logger.info(f"✓ {len(incidents)} incidents derived for repo {repo_id}")
    return True


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def run_metrics(
    supabase: SupabaseClient,
    team_id: str,
    from_date: date,
    to_date: date,
    branch_mode: BranchMode,
    branches=None,
    as_json: bool = False
) -> bool:
    try:
        window = TimeWindow.from_dates(from_date, to_date)
    except ValueError as e:
        logger.error(str(e))
        return False

    report = MetricsEngine(supabase).compute_metrics(team_id, window, branch_mode, branches)

    if as_json:
        print(report.model_dump_json(indent=2))
        return True

    lead = report.lead_time
    freq = report.deployment_frequency
    cfr = report.change_failure_rate
    mttr = report.mean_time_to_recovery

    logger.info("=" * 80)
    logger.info(f"DORA METRICS: team {team_id} [{branch_mode.value}] {from_date} → {to_date}")
    logger.info("=" * 80)
    logger.info(
        f"Lead time: {lead.current.lead_time / 3600:.1f}h over {lead.current.pr_count} PRs "
        f"(previous {lead.previous.lead_time / 3600:.1f}h)"
    )
    logger.info(
        f"Deployment frequency: {freq.current.frequency} per {freq.current.unit} "
        f"(previous {freq.previous.comparable_frequency} per {freq.current.unit})"
    )
    logger.info(
        f"Change failure rate: {cfr.current.change_failure_rate}% "
        f"({cfr.current.failed_deployments}/{cfr.current.total_deployments} runs, "
        f"previous {cfr.previous.change_failure_rate}%)"
    )
    logger.info(
        f"Mean time to recovery: {mttr.current.mean_time_to_recovery / 3600:.1f}h over "
        f"{mttr.current.incident_count} incidents "
        f"(previous {mttr.previous.mean_time_to_recovery / 3600:.1f}h)"
    )

    trends = report.trends()
    if trends:
        logger.info(f"\nDaily trend ({len(trends)} active days):")
        for day, snapshot in trends.items():
            rate = snapshot.change_failure_rate.change_failure_rate if snapshot.change_failure_rate else 0
            logger.info(f"  {day}: {snapshot.deployments} deployments, CFR {rate}%")
    return True


def main():
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="DORA Pipeline - ingest CI/VCS activity and compute DORA metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Fetch one repo (history since last fetch, or the last 90 days)
  python main.py fetch 3f0c...-repo-id

  # Fetch every repo of a team, 30 days back for never-fetched repos
  python main.py fetch 9a1b...-team-id --team --days-prior 30

  # Metrics for January on the production branch
  python main.py metrics 9a1b...-team-id --from 2025-01-01 --to 2025-01-31 --branch-mode prod
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Fetch command
    fetch_parser = subparsers.add_parser("fetch", help="Fetch data from the provider fetch service")
    fetch_parser.add_argument("target", help="Repo id (or team id with --team)")
    fetch_parser.add_argument("--team", action="store_true", help="Treat target as a team id and fetch all its repos")
    fetch_parser.add_argument(
        "--days-prior",
        type=int,
        default=None,
        help="History to fetch for repos never fetched before (default: FETCH_DAYS_PRIOR)"
    )
    fetch_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for background fetches (default: wait until done)"
    )

    # Reparse command
    reparse_parser = subparsers.add_parser("reparse", help="Rebuild rows of a repo's latest successful fetch")
    reparse_parser.add_argument("repo_id", help="Repo id")

    # Backfill command
    backfill_parser = subparsers.add_parser("backfill", help="Re-parse stored fetch payloads")
    backfill_parser.add_argument("batch_id", nargs="?", default=None, help="Only this fetch batch")
    backfill_parser.add_argument("--force", action="store_true", help="Re-process batches that already have PRs")
    backfill_parser.add_argument("--dry-run", action="store_true", help="Only report what would be written")

    # Incidents command
    incidents_parser = subparsers.add_parser("incidents", help="Re-derive incidents from workflow runs")
    incidents_parser.add_argument("repo_id", help="Repo id")

    # Metrics command
    metrics_parser = subparsers.add_parser("metrics", help="Compute DORA metrics for a team")
    metrics_parser.add_argument("team_id", help="Team id")
    metrics_parser.add_argument("--from", dest="from_date", type=parse_date, default=None, help="Start date YYYY-MM-DD (default: 30 days ago)")
    metrics_parser.add_argument("--to", dest="to_date", type=parse_date, default=None, help="End date YYYY-MM-DD (default: today)")
    metrics_parser.add_argument(
        "--branch-mode",
        type=str.lower,
        choices=[mode.value for mode in BranchMode],
        default=BranchMode.ALL.value,
        help="Branch filter: prod, stage, dev, all or custom (default: all)"
    )
    metrics_parser.add_argument(
        "--branches",
        default=None,
        help="Comma-separated branch names for --branch-mode custom"
    )
    metrics_parser.add_argument("--json", action="store_true", help="Print the full report as JSON")

    args = parser.parse_args()

    # Show help if no command provided
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config()
    setup_logger(config.log_level)

    try:
        supabase = SupabaseClient(
            config.credentials.supabase_url,
            config.credentials.supabase_key
        )
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        sys.exit(1)

    if args.command == "fetch":
        pipeline = build_pipeline(config, supabase)
        try:
            success = run_fetch(pipeline, args.target, team=args.team, days_prior=args.days_prior, timeout=args.timeout)
        finally:
            pipeline.shutdown(wait=args.timeout is None)
        sys.exit(0 if success else 1)

    elif args.command == "reparse":
        pipeline = build_pipeline(config, supabase)
        try:
            success = run_reparse(pipeline, args.repo_id)
        finally:
            pipeline.shutdown()
        sys.exit(0 if success else 1)

    elif args.command == "backfill":
        pipeline = build_pipeline(config, supabase)
        try:
            success = run_backfill(pipeline, args.batch_id, args.force, args.dry_run)
        finally:
            pipeline.shutdown()
        sys.exit(0 if success else 1)

    elif args.command == "incidents":
        success = run_incidents(supabase, args.repo_id)
        sys.exit(0 if success else 1)

    elif args.command == "metrics":
        to_date = args.to_date or utcnow().date()
        from_date = args.from_date or (to_date - timedelta(days=30))
        branches = [b.strip() for b in args.branches.split(",") if b.strip()] if args.branches else None
        success = run_metrics(
            supabase,
            args.team_id,
            from_date,
            to_date,
            BranchMode(args.branch_mode),
            branches=branches,
            as_json=args.json
        )
        sys.exit(0 if success else 1)

    else:
        logger.error(f"Command '{args.command}' is not implemented")
        sys.exit(1)


if __name__ == "__main__":
    main()
