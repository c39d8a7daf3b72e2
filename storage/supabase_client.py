"""
Supabase storage client for the canonical record store.

Exposes a small generic surface over the record tables:
- upsert(kind, rows, on_conflict): insert-or-update keyed by a conflict column
- query(kind, filters): filtered, ordered, paginated reads
- delete_where(kind, filters): filtered deletes (used to discard a fetch batch)

plus the handful of domain lookups the ingestion pipeline and metrics engine
need (team repos, branch configuration, fetch batch lifecycle). Domain helpers
are written against the generic methods only, so any backend that implements
those four primitives gets them for free.

Upserts are keyed by deterministic ids and are safe to re-run.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from supabase import Client, create_client

from models.data_models import FetchBatch, RepoBranchConfig
from utils.logger import setup_logger
from utils.timeutils import utcnow

logger = setup_logger(__name__)


class RecordKind(str, Enum):
    """Tables behind each record kind."""

    PULL_REQUESTS = "pull_requests"
    WORKFLOW_RUNS = "workflow_runs"
    INCIDENTS = "incidents"
    FETCH_BATCHES = "fetch_data"
    # Read-only collaborator tables
    REPOS = "repos"
    TEAM_REPOS = "team_repos"
    TOKENS = "tokens"


# Record kinds owned by a fetch batch, in safe deletion order
BATCH_OWNED_KINDS = (RecordKind.PULL_REQUESTS, RecordKind.INCIDENTS, RecordKind.WORKFLOW_RUNS)


class QueryFilter(BaseModel):
    """One predicate of a store query."""

    model_config = ConfigDict(frozen=True)

    op: str  # eq | in | gte | lte | not_null | is_null
    column: str
    value: Any = None

    @classmethod
    def eq(cls, column: str, value: Any) -> "QueryFilter":
        return cls(op="eq", column=column, value=value)

    @classmethod
    def in_(cls, column: str, values: Iterable[Any]) -> "QueryFilter":
        return cls(op="in", column=column, value=list(values))

    @classmethod
    def gte(cls, column: str, value: Any) -> "QueryFilter":
        return cls(op="gte", column=column, value=value)

    @classmethod
    def lte(cls, column: str, value: Any) -> "QueryFilter":
        return cls(op="lte", column=column, value=value)

    @classmethod
    def not_null(cls, column: str) -> "QueryFilter":
        return cls(op="not_null", column=column)

    @classmethod
    def is_null(cls, column: str) -> "QueryFilter":
        return cls(op="is_null", column=column)

    def wire_value(self) -> Any:
        """Value as sent to PostgREST (datetimes as ISO 8601)."""
        if isinstance(self.value, datetime):
            return self.value.isoformat()
        if isinstance(self.value, Enum):
            return self.value.value
        return self.value


def _kind_name(kind: Any) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


class SupabaseClient:
    """Client for interacting with Supabase storage."""

    PAGE_SIZE = 1000  # Supabase default max rows per request
    UPSERT_CHUNK_SIZE = 500

    def __init__(self, supabase_url: str, supabase_key: str):
        """
        Initialize Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key
        """
        self.client: Client = create_client(supabase_url, supabase_key)
        logger.info(f"Initialized SupabaseClient for {supabase_url}")

    # ------------------------------------------------------------------
    # Generic primitives
    # ------------------------------------------------------------------

    def _apply_filters(self, query, filters: Sequence[QueryFilter]):
        for f in filters:
            if f.op == "eq":
                query = query.eq(f.column, f.wire_value())
            elif f.op == "in":
                query = query.in_(f.column, f.wire_value())
            elif f.op == "gte":
                query = query.gte(f.column, f.wire_value())
            elif f.op == "lte":
                query = query.lte(f.column, f.wire_value())
            elif f.op == "not_null":
                query = query.not_.is_(f.column, "null")
            elif f.op == "is_null":
                query = query.is_(f.column, "null")
            else:
                raise ValueError(f"Unsupported filter operator: {f.op}")
        return query

    def upsert(
        self,
        kind: RecordKind,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id"
    ) -> int:
        """
        Insert or update rows keyed by ``on_conflict``.

        Rows are sent in chunks; a failure aborts the remaining chunks of this
        call but never touches other record kinds.

        Returns:
            Number of rows written

        Raises:
            Exception if a chunk fails
        """
        if not rows:
            return 0

        table = _kind_name(kind)
        written = 0
        try:
            for start in range(0, len(rows), self.UPSERT_CHUNK_SIZE):
                chunk = rows[start:start + self.UPSERT_CHUNK_SIZE]
                self.client.table(table).upsert(chunk, on_conflict=on_conflict).execute()
                written += len(chunk)
        except Exception as e:
            logger.error(f"Failed to upsert {len(rows)} rows into {table} ({written} written): {e}")
            raise

        logger.debug(f"Upserted {written} rows into {table}")
        return written

    def query(
        self,
        kind: RecordKind,
        filters: Sequence[QueryFilter] = (),
        columns: str = "*",
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Read rows matching all filters.

        Paginates past the Supabase row cap; ``limit`` bounds the total.

        Raises:
            Exception if the query fails
        """
        table = _kind_name(kind)
        rows: List[Dict[str, Any]] = []
        offset = 0

        try:
            while limit is None or len(rows) < limit:
                fetch_size = self.PAGE_SIZE if limit is None else min(self.PAGE_SIZE, limit - len(rows))

                query = self._apply_filters(self.client.table(table).select(columns), filters)
                if order_by:
                    query = query.order(order_by, desc=desc)
                result = query.range(offset, offset + fetch_size - 1).execute()
                batch = result.data or []

                rows.extend(batch)
                offset += len(batch)

                # Fewer than requested means there are no more rows
                if len(batch) < fetch_size:
                    break
        except Exception as e:
            logger.error(f"Failed to query {table}: {e}")
            raise

        logger.debug(f"Queried {len(rows)} rows from {table}")
        return rows

    def insert(self, kind: RecordKind, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as stored (with generated columns)."""
        table = _kind_name(kind)
        try:
            result = self.client.table(table).insert(row).execute()
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {e}")
            raise
        return result.data[0] if result.data else row

    def update_where(
        self,
        kind: RecordKind,
        values: Dict[str, Any],
        filters: Sequence[QueryFilter]
    ) -> int:
        """Update rows matching all filters. Returns number of rows updated."""
        if not filters:
            raise ValueError("Refusing to update without filters")
        table = _kind_name(kind)
        try:
            query = self._apply_filters(self.client.table(table).update(values), filters)
            result = query.execute()
        except Exception as e:
            logger.error(f"Failed to update {table}: {e}")
            raise
        return len(result.data or [])

    def delete_where(self, kind: RecordKind, filters: Sequence[QueryFilter]) -> int:
        """Delete rows matching all filters. Returns number of rows deleted."""
        if not filters:
            raise ValueError("Refusing to delete without filters")
        table = _kind_name(kind)
        try:
            query = self._apply_filters(self.client.table(table).delete(), filters)
            result = query.execute()
        except Exception as e:
            logger.error(f"Failed to delete from {table}: {e}")
            raise
        deleted = len(result.data or [])
        logger.debug(f"Deleted {deleted} rows from {table}")
        return deleted

    # ------------------------------------------------------------------
    # Repos, teams and tokens (read-only collaborators)
    # ------------------------------------------------------------------

    def get_team_repo_ids(self, team_id: str) -> List[str]:
        """Repo ids assigned to a team (empty list for unknown teams)."""
        rows = self.query(
            RecordKind.TEAM_REPOS,
            [QueryFilter.eq("team_id", team_id)],
            columns="repo_id"
        )
        return [row["repo_id"] for row in rows if row.get("repo_id")]

    def get_repo_branch_map(self, repo_ids: Sequence[str]) -> Dict[str, RepoBranchConfig]:
        """Per-repo dev/stage/prod branch configuration."""
        if not repo_ids:
            return {}
        rows = self.query(
            RecordKind.REPOS,
            [QueryFilter.in_("id", repo_ids)],
            columns="id, dev_branch, stage_branch, prod_branch"
        )
        return {
            row["id"]: RepoBranchConfig(
                dev_branch=row.get("dev_branch"),
                stage_branch=row.get("stage_branch"),
                prod_branch=row.get("prod_branch"),
            )
            for row in rows
        }

    def get_repo(self, repo_id: str) -> Optional[Dict[str, Any]]:
        """Repo row by id, or None."""
        rows = self.query(RecordKind.REPOS, [QueryFilter.eq("id", repo_id)], limit=1)
        return rows[0] if rows else None

    def get_token(self, token_id: str) -> Optional[Dict[str, Any]]:
        """Token row (token, type, email) by id, or None."""
        rows = self.query(
            RecordKind.TOKENS,
            [QueryFilter.eq("id", token_id)],
            columns="id, token, type, email",
            limit=1
        )
        return rows[0] if rows else None

    def update_repo_last_fetched(self, repo_id: str, fetched_until: str) -> None:
        self.update_where(
            RecordKind.REPOS,
            {"last_fetched_at": fetched_until},
            [QueryFilter.eq("id", repo_id)]
        )

    # ------------------------------------------------------------------
    # Fetch batch lifecycle
    # ------------------------------------------------------------------

    def create_fetch_batch(
        self,
        repo_id: str,
        state: str = "processing",
        raw_response: Any = None
    ) -> FetchBatch:
        """Record the start of an ingestion attempt."""
        row = self.insert(
            RecordKind.FETCH_BATCHES,
            {
                "repo_id": repo_id,
                "state": state,
                "raw_response": raw_response,
                "fetched_at": utcnow().isoformat(),
            }
        )
        batch = FetchBatch.model_validate(row)
        logger.debug(f"Created fetch batch {batch.id} for repo {repo_id} (state={state})")
        return batch

    def complete_fetch_batch(
        self,
        batch_id: str,
        state: str,
        raw_response: Any = None
    ) -> None:
        """Write the terminal state (and payload) of a fetch batch."""
        values: Dict[str, Any] = {"state": state}
        if raw_response is not None:
            values["raw_response"] = raw_response
        self.update_where(RecordKind.FETCH_BATCHES, values, [QueryFilter.eq("id", batch_id)])
        logger.debug(f"Fetch batch {batch_id} -> {state}")

    def get_fetch_batch(self, batch_id: str) -> Optional[FetchBatch]:
        rows = self.query(RecordKind.FETCH_BATCHES, [QueryFilter.eq("id", batch_id)], limit=1)
        return FetchBatch.model_validate(rows[0]) if rows else None

    def list_successful_batches(
        self,
        repo_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None
    ) -> List[FetchBatch]:
        """Successful fetch batches, oldest first unless ``newest_first``."""
        filters = [QueryFilter.eq("state", "success")]
        if repo_id:
            filters.append(QueryFilter.eq("repo_id", repo_id))
        if batch_id:
            filters.append(QueryFilter.eq("id", batch_id))
        rows = self.query(
            RecordKind.FETCH_BATCHES,
            filters,
            order_by="fetched_at",
            desc=newest_first,
            limit=limit
        )
        return [FetchBatch.model_validate(row) for row in rows]

    def count_batch_rows(self, kind: RecordKind, batch_id: str) -> int:
        """Number of rows of ``kind`` owned by a fetch batch."""
        rows = self.query(kind, [QueryFilter.eq("fetch_data_id", batch_id)], columns="id")
        return len(rows)

    def delete_batch_rows(self, batch_id: str) -> Dict[str, int]:
        """Discard every PR, incident and workflow run owned by a fetch batch."""
        deleted = {}
        for kind in BATCH_OWNED_KINDS:
            deleted[kind.value] = self.delete_where(kind, [QueryFilter.eq("fetch_data_id", batch_id)])
        logger.info(
            f"Discarded rows of fetch batch {batch_id}: "
            + ", ".join(f"{name}={count}" for name, count in deleted.items())
        )
        return deleted
