"""
Fetch batch lifecycle: start fetches, run them in the background, re-parse.

``start_fetch`` records a ``processing`` FetchBatch and hands the upstream call
to a worker thread, returning the batch id straight away. Callers poll
``get_batch_state`` (or ``wait`` from a CLI) for the terminal state.

There is no per-repo locking: two overlapping fetches of one repository write
the same deterministic ids and converge. There are no automatic retries
either; a failed batch keeps its error payload and a new fetch is the retry.
"""

import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel, Field

from incidents.deriver import IncidentDeriver
from ingestion.normalizer import IngestResult, ingest_payload, normalize_payload
from models.data_models import FetchBatch
from storage.cache import fetch_cache_key
from storage.supabase_client import RecordKind
from utils.logger import setup_logger
from utils.timeutils import format_fetch_time, parse_timestamp, utcnow

logger = setup_logger(__name__)


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""


class RepoNotFoundError(PipelineError):
    pass


class TokenNotFoundError(PipelineError):
    pass


class NoSuccessfulFetchError(PipelineError):
    """No successful fetch batch exists to re-parse."""


class EmptyPayloadError(PipelineError):
    """A successful fetch batch has no stored payload."""


class FetchJob(BaseModel):
    """Everything a worker needs to run one upstream fetch."""

    repo_id: str
    batch_id: str
    url: str
    body: Dict[str, Any]
    from_time: str
    to_time: str
    payload_stored: bool = False


class BackfillSummary(BaseModel):
    """Outcome of re-parsing stored fetch batches."""

    dry_run: bool = False
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    results: Dict[str, IngestResult] = Field(default_factory=dict)

    @property
    def pull_requests(self) -> int:
        return sum(r.pull_requests for r in self.results.values())

    @property
    def workflow_runs(self) -> int:
        return sum(r.workflow_runs for r in self.results.values())

    @property
    def incidents(self) -> int:
        return sum(r.incidents for r in self.results.values())


def _decode_payload(raw: Any) -> Any:
    """Stored payloads are JSON; plain-text bodies stay strings."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


class FetchPipeline:
    """Runs fetch -> store payload -> normalize -> derive incidents."""

    def __init__(
        self,
        store,
        fetch_client,
        cache=None,
        max_workers: int = 4,
        default_days_prior: int = 90
    ):
        """
        Initialize the pipeline.

        Args:
            store: SupabaseClient
            fetch_client: LambdaFetchClient
            cache: Optional FetchCache (None disables caching)
            max_workers: Background fetch threads
            default_days_prior: Lookback for repos that were never fetched
        """
        self.store = store
        self.fetch_client = fetch_client
        self.cache = cache
        self.default_days_prior = default_days_prior
        self.deriver = IncidentDeriver(store)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fetch")
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Starting fetches
    # ------------------------------------------------------------------

    def _fetch_window(self, repo: Dict[str, Any], days_prior: Optional[int]):
        now = utcnow()
        last_fetched = parse_timestamp(repo.get("last_fetched_at"))
        if last_fetched:
            start = last_fetched
        else:
            start = now - timedelta(days=days_prior if days_prior is not None else self.default_days_prior)
        return format_fetch_time(start), format_fetch_time(now)

    def prepare_job(self, repo_id: str, days_prior: Optional[int] = None) -> FetchJob:
        """
        Resolve repo, token and request body for one repository.

        The returned job has no batch id yet.

        Raises:
            RepoNotFoundError: Unknown repo id
            TokenNotFoundError: Repo has no usable token (or a Bitbucket token
                without an email)
        """
        repo = self.store.get_repo(repo_id)
        if not repo:
            raise RepoNotFoundError(f"Repo not found: {repo_id}")

        token = self.store.get_token(repo["token_id"]) if repo.get("token_id") else None
        if not token or not (token.get("token") or "").strip():
            raise TokenNotFoundError(f"Repo token not found or invalid for repo {repo_id}")

        from_time, to_time = self._fetch_window(repo, days_prior)
        try:
            body = self.fetch_client.build_request_body(repo, token, from_time, to_time)
        except ValueError as e:
            raise TokenNotFoundError(str(e)) from e

        return FetchJob(
            repo_id=repo_id,
            batch_id="",
            url=self.fetch_client.url_for(token),
            body=body,
            from_time=from_time,
            to_time=to_time,
        )

    def start_fetch(self, repo_id: str, days_prior: Optional[int] = None) -> str:
        """
        Start a background fetch for one repository.

        Returns:
            Id of the ``processing`` FetchBatch to poll
        """
        job = self.prepare_job(repo_id, days_prior)
        batch = self.store.create_fetch_batch(repo_id, state="processing")
        job.batch_id = batch.id

        logger.info(
            f"Starting fetch for repo {repo_id} ({job.from_time} -> {job.to_time}), batch {batch.id}"
        )
        future = self.executor.submit(self.run_job, job)
        with self._lock:
            self._futures[batch.id] = future
        future.add_done_callback(lambda _, batch_id=batch.id: self._forget(batch_id))
        return batch.id

    def _forget(self, batch_id: str) -> None:
        with self._lock:
            self._futures.pop(batch_id, None)

    def start_team_fetch(self, team_id: str, days_prior: Optional[int] = None) -> Dict[str, Optional[str]]:
        """
        Start a fetch for every repository of a team.

        Returns:
            Map of repo id to batch id (None where the fetch could not start)
        """
        repo_ids = self.store.get_team_repo_ids(team_id)
        if not repo_ids:
            logger.warning(f"Team {team_id} has no repos")
            return {}

        batches: Dict[str, Optional[str]] = {}
        for repo_id in repo_ids:
            try:
                batches[repo_id] = self.start_fetch(repo_id, days_prior)
            except PipelineError as e:
                logger.error(f"Could not start fetch for repo {repo_id}: {e}")
                batches[repo_id] = None
            except Exception as e:
                logger.error(f"Could not record fetch batch for repo {repo_id}: {e}")
                batches[repo_id] = None

        started = sum(1 for batch_id in batches.values() if batch_id)
        logger.info(f"Team {team_id}: started {started}/{len(repo_ids)} fetches")
        return batches

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _cached_payload(self, job: FetchJob) -> Optional[Any]:
        if self.cache is None:
            return None
        cached = self.cache.get(fetch_cache_key(job.repo_id, job.from_time, job.to_time))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning(f"Ignoring unreadable cache entry for repo {job.repo_id}")
            return None

    def _cache_payload(self, job: FetchJob, payload: Any) -> None:
        if self.cache is None:
            return
        value = payload if isinstance(payload, str) else json.dumps(payload)
        self.cache.set(fetch_cache_key(job.repo_id, job.from_time, job.to_time), value)

    def run_job(self, job: FetchJob) -> str:
        """
        Execute one fetch and write the batch's terminal state.

        Never raises; every outcome ends up on the FetchBatch row.

        Returns:
            Terminal batch state ("success" or "failure")
        """
        try:
            return self._run_job(job)
        except Exception as e:
            logger.error(f"Fetch batch {job.batch_id} for repo {job.repo_id} failed: {e}")
            # Once the upstream payload is on the row only the state may change
            raw_response = None if job.payload_stored else {
                "error": str(e), "message": str(e), "timestamp": utcnow().isoformat()
            }
            try:
                self.store.complete_fetch_batch(job.batch_id, "failure", raw_response)
            except Exception as update_error:
                logger.error(f"Could not record failure for batch {job.batch_id}: {update_error}")
            return "failure"

    def _run_job(self, job: FetchJob) -> str:
        payload = self._cached_payload(job)
        if payload is not None:
            logger.info(f"Serving repo {job.repo_id} fetch from cache")
        else:
            try:
                response = self.fetch_client.fetch(job.url, job.body)
            except requests.RequestException as e:
                raise PipelineError(f"Lambda request failed: {e}") from e

            if not response.ok:
                # Keep the upstream body so the failure can be inspected
                self.store.complete_fetch_batch(job.batch_id, "failure", response.payload)
                logger.warning(
                    f"Fetch batch {job.batch_id} failed with status {response.status_code}"
                )
                return "failure"

            payload = response.payload
            self._cache_payload(job, payload)

        self.store.complete_fetch_batch(job.batch_id, "success", payload)
        job.payload_stored = True

        result = ingest_payload(self.store, payload, job.repo_id, job.batch_id)
        if not result.ok:
            self.store.complete_fetch_batch(job.batch_id, "failure")
            logger.error(
                f"Fetch batch {job.batch_id} marked failed: could not store "
                f"{', '.join(result.errors)}"
            )
            return "failure"

        self._derive(job.repo_id)
        try:
            self.store.update_repo_last_fetched(job.repo_id, job.to_time)
        except Exception as e:
            # Batch stays success; the next fetch repeats this window
            logger.error(f"Could not update last_fetched_at for repo {job.repo_id}: {e}")
        logger.info(f"Fetch batch {job.batch_id} for repo {job.repo_id} complete")
        return "success"

    def _derive(self, repo_id: str) -> None:
        # Derivation runs over committed runs; its failure leaves them in place
        try:
            self.deriver.derive(repo_id)
        except Exception as e:
            logger.error(f"Incident derivation failed for repo {repo_id}: {e}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def get_batch_state(self, batch_id: str) -> Optional[str]:
        batch = self.store.get_fetch_batch(batch_id)
        return batch.state if batch else None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted fetch finished. False on timeout."""
        with self._lock:
            futures = list(self._futures.values())
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Re-parsing stored payloads
    # ------------------------------------------------------------------

    def _reingest(self, batch: FetchBatch) -> IngestResult:
        payload = _decode_payload(batch.raw_response)
        self.store.delete_batch_rows(batch.id)
        result = ingest_payload(self.store, payload, batch.repo_id, batch.id)
        self._derive(batch.repo_id)
        return result

    def reparse_latest(self, repo_id: str) -> IngestResult:
        """
        Rebuild the rows of a repo's latest successful batch from its payload.

        Raises:
            NoSuccessfulFetchError: The repo has no successful batch
            EmptyPayloadError: The batch has no stored payload
        """
        batches = self.store.list_successful_batches(repo_id=repo_id, newest_first=True, limit=1)
        if not batches:
            raise NoSuccessfulFetchError(
                f"No successful fetch found for repo {repo_id}. Fetch data first."
            )
        batch = batches[0]
        if batch.raw_response is None:
            raise EmptyPayloadError(f"Fetch batch {batch.id} has no raw_response")

        logger.info(f"Re-parsing fetch batch {batch.id} for repo {repo_id}")
        return self._reingest(batch)

    def backfill(
        self,
        batch_id: Optional[str] = None,
        force: bool = False,
        dry_run: bool = False
    ) -> BackfillSummary:
        """
        Re-parse stored successful batches, oldest first.

        Batches that already own PR rows are skipped unless ``force`` is set or
        a single ``batch_id`` is requested. ``dry_run`` only normalizes and
        reports what would be written.
        """
        summary = BackfillSummary(dry_run=dry_run)
        batches = self.store.list_successful_batches(batch_id=batch_id)
        logger.info(f"Backfill: {len(batches)} successful fetch batches to consider")

        for i, batch in enumerate(batches, 1):
            prefix = f"[{i}/{len(batches)}] batch {batch.id}"
            if batch.raw_response is None:
                logger.warning(f"{prefix}: no raw_response, skipping")
                summary.skipped += 1
                continue

            try:
                if not (force or batch_id):
                    existing = self.store.count_batch_rows(RecordKind.PULL_REQUESTS, batch.id)
                    if existing:
                        logger.info(f"{prefix}: already has {existing} PRs, skipping")
                        summary.skipped += 1
                        continue

                if dry_run:
                    normalized = normalize_payload(
                        _decode_payload(batch.raw_response), batch.repo_id, batch.id
                    )
                    result = IngestResult(
                        pull_requests=len(normalized.pull_requests),
                        workflow_runs=len(normalized.workflow_runs),
                        incidents=len(normalized.incidents),
                        skipped_records=normalized.skipped_count,
                        skipped_sections=normalized.skipped_sections,
                    )
                else:
                    result = self._reingest(batch)
            except Exception as e:
                logger.error(f"{prefix}: failed - {e}")
                summary.failed += 1
                continue

            summary.results[batch.id] = result
            if result.ok:
                summary.processed += 1
            else:
                summary.failed += 1
            logger.info(
                f"{prefix}: {result.pull_requests} PRs, {result.workflow_runs} runs, "
                f"{result.incidents} incidents" + (" (dry run)" if dry_run else "")
            )

        logger.info(
            f"Backfill done: {summary.processed} processed, {summary.skipped} skipped, "
            f"{summary.failed} failed"
        )
        return summary
