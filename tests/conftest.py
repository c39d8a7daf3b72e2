"""Shared pytest fixtures and configuration."""

import copy
import uuid
from collections import defaultdict

import pytest

from storage.supabase_client import QueryFilter, RecordKind, SupabaseClient
from utils.timeutils import parse_timestamp

REPO_ID = "11111111-1111-4111-8111-111111111111"
OTHER_REPO_ID = "22222222-2222-4222-8222-222222222222"
TEAM_ID = "33333333-3333-4333-8333-333333333333"
TOKEN_ID = "44444444-4444-4444-8444-444444444444"
BATCH_ID = "55555555-5555-4555-8555-555555555555"

PR_UUID_1 = "aaaaaaaa-0000-4000-8000-000000000001"
PR_UUID_2 = "aaaaaaaa-0000-4000-8000-000000000002"


def _kind_name(kind) -> str:
    return kind.value if isinstance(kind, RecordKind) else str(kind)


def _compare_values(left, right):
    """Timestamps compare as instants, everything else as-is."""
    left_ts = parse_timestamp(left) if isinstance(left, str) else None
    right_ts = parse_timestamp(right) if isinstance(right, str) else None
    if left_ts is not None and right_ts is not None:
        return left_ts, right_ts
    return left, right


class InMemoryStore(SupabaseClient):
    """
    SupabaseClient with the five storage primitives backed by dicts.

    Domain helpers (get_repo, create_fetch_batch, ...) are inherited unchanged,
    so tests exercise the real helper code on top of the fake primitives.
    """

    def __init__(self):
        self.tables = defaultdict(dict)
        self.failures = {}
        self.upsert_calls = []

    # Test helpers

    def fail(self, kind, op: str, error: Exception = None):
        """Make every ``op`` ("upsert", "query", ...) on ``kind`` raise."""
        self.failures[(_kind_name(kind), op)] = error or RuntimeError(f"{op} {_kind_name(kind)} failed")

    def rows(self, kind):
        return list(self.tables[_kind_name(kind)].values())

    def count(self, kind) -> int:
        return len(self.tables[_kind_name(kind)])

    def seed(self, kind, rows):
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables[_kind_name(kind)][row["id"]] = row

    def _check(self, kind, op):
        error = self.failures.get((_kind_name(kind), op))
        if error:
            raise error

    @staticmethod
    def _matches(row, f: QueryFilter) -> bool:
        value = row.get(f.column)
        wire = f.wire_value()
        if f.op == "eq":
            return value == wire
        if f.op == "in":
            return value in wire
        if f.op == "not_null":
            return value is not None
        if f.op == "is_null":
            return value is None
        if value is None:
            return False
        left, right = _compare_values(value, wire)
        if f.op == "gte":
            return left >= right
        if f.op == "lte":
            return left <= right
        raise ValueError(f"Unsupported filter operator: {f.op}")

    def _select(self, kind, filters):
        return [
            row for row in self.tables[_kind_name(kind)].values()
            if all(self._matches(row, f) for f in filters)
        ]

    # Storage primitives

    def upsert(self, kind, rows, on_conflict="id"):
        self._check(kind, "upsert")
        self.upsert_calls.append((_kind_name(kind), len(rows)))
        table = self.tables[_kind_name(kind)]
        for row in rows:
            key = row[on_conflict]
            table.setdefault(key, {}).update(copy.deepcopy(row))
        return len(rows)

    def query(self, kind, filters=(), columns="*", order_by=None, desc=False, limit=None):
        self._check(kind, "query")
        rows = [copy.deepcopy(row) for row in self._select(kind, filters)]
        if order_by:
            rows.sort(
                key=lambda row: (row.get(order_by) is None, parse_timestamp(row.get(order_by)) or row.get(order_by) or ""),
                reverse=desc
            )
        return rows[:limit] if limit is not None else rows

    def insert(self, kind, row):
        self._check(kind, "insert")
        row = copy.deepcopy(row)
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[_kind_name(kind)][row["id"]] = row
        return copy.deepcopy(row)

    def update_where(self, kind, values, filters):
        self._check(kind, "update")
        if not filters:
            raise ValueError("Refusing to update without filters")
        matched = self._select(kind, filters)
        for row in matched:
            row.update(copy.deepcopy(values))
        return len(matched)

    def delete_where(self, kind, filters):
        self._check(kind, "delete")
        if not filters:
            raise ValueError("Refusing to delete without filters")
        table = self.tables[_kind_name(kind)]
        matched = [row["id"] for row in self._select(kind, filters)]
        for key in matched:
            del table[key]
        return len(matched)


@pytest.fixture
def store():
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def test_env(monkeypatch, tmp_path):
    """
    Set valid test environment variables.

    This fixture sets up valid test environment variables so config
    can be loaded during tests without requiring real credentials.
    """
    monkeypatch.setenv("SUPABASE_URL", "https://test-project.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "test_supabase_key_1234567890")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("LAMBDA_FETCH_URL", raising=False)
    monkeypatch.delenv("BITBUCKET_LAMBDA_FETCH_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("REDIS_FETCH_CACHE_TTL", raising=False)
    monkeypatch.delenv("FETCH_DAYS_PRIOR", raising=False)
    monkeypatch.delenv("FETCH_WORKERS", raising=False)

    return {
        "supabase_url": "https://test-project.supabase.co",
        "supabase_key": "test_supabase_key_1234567890",
        "log_level": "DEBUG",
    }


@pytest.fixture
def invalid_env(monkeypatch):
    """
    Set up invalid/missing environment variables for testing validation.
    """
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_KEY", "")


@pytest.fixture
def sample_payload():
    """
    Fetch-service response for one repo plus one errored section.

    - PR 1 appears twice (pull_requests and deployments[].related_prs)
    - PR 3 only appears as a related PR and has no UUID id
    - runs: 101 success, 102 failure, 103 success (epoch-ms timestamp)
    - one provider incident keyed to run 102
    """
    return {
        "repos": [
            {
                "org_name": "acme",
                "repo_name": "api",
                "pull_requests": [
                    {
                        "id": PR_UUID_1,
                        "number": "1",
                        "title": "Add login",
                        "author": {"username": "alice"},
                        "state": "MERGED",
                        "base_branch": "main",
                        "head_branch": "feature/login",
                        "created_at": "2025-01-01T09:00:00Z",
                        "updated_at": "2025-01-02T10:00:00Z",
                        "commits": "3",
                        "additions": 120,
                        "deletions": "4",
                        "comments": 2,
                        "first_commit_to_open": 3600,
                        "cycle_time": "1800",
                    },
                    {
                        "id": PR_UUID_2,
                        "number": 2,
                        "title": "Fix typo",
                        "author": {"login": "bob"},
                        "state": "OPEN",
                        "base_branch": "main",
                        "head_branch": "fix/typo",
                        "created_at": "2025-01-03T09:00:00Z",
                        "updated_at": "2025-01-03T09:30:00Z",
                    },
                ],
                "deployments": [
                    {
                        "related_prs": [
                            {
                                "id": PR_UUID_1,
                                "number": 1,
                                "title": "Add login (duplicate)",
                                "state": "MERGED",
                                "created_at": "2025-01-01T09:00:00Z",
                                "updated_at": "2025-01-02T10:00:00Z",
                            },
                            {
                                "id": "None",
                                "number": 3,
                                "title": "Bump deps",
                                "author": "carol",
                                "state": "PullRequestState.MERGED",
                                "base_branch": "main",
                                "created_at": "2025-01-04T08:00:00Z",
                                "updated_at": "2025-01-04T12:00:00Z",
                            },
                        ]
                    }
                ],
                "workflow_runs": [
                    {
                        "id": 101,
                        "name": "CI",
                        "head_branch": "main",
                        "status": "completed",
                        "conclusion": "success",
                        "created_at": "2025-01-02T10:05:00Z",
                        "actor": {"login": "alice"},
                        "workflow_id": 77,
                    },
                    {
                        "run_id": "102",
                        "name": "CI",
                        "head_branch": "main",
                        "status": "completed",
                        "conclusion": "failure",
                        "created_at": "2025-01-03T11:00:00Z",
                    },
                    {
                        "name": "CI Run 103",
                        "head_branch": "main",
                        "status": "completed",
                        "conclusion": "success",
                        "created_at": 1735992000000,
                    },
                ],
                "incidents": [
                    {
                        "id": "None",
                        "key": "workflow-102",
                        "incident_number": 102,
                        "creation_date": "2025-01-03T11:00:00Z",
                        "resolved_date": "2025-01-04T12:00:00Z",
                    }
                ],
            },
            {
                "org_name": "acme",
                "repo_name": "missing",
                "error": "Repository not found",
            },
        ]
    }


@pytest.fixture
def seeded_repo(store):
    """Store with one GitHub repo, its token and a team containing it."""
    store.seed(RecordKind.TOKENS, [
        {"id": TOKEN_ID, "token": "ghp_secret", "type": "github", "email": None}
    ])
    store.seed(RecordKind.REPOS, [
        {
            "id": REPO_ID,
            "token_id": TOKEN_ID,
            "org_name": "acme",
            "repo_name": "api",
            "cfr_type": "CI-CD",
            "workflow_file": "ci.yml",
            "last_fetched_at": None,
            "dev_branch": "develop",
            "stage_branch": "staging",
            "prod_branch": "main",
        }
    ])
    store.seed(RecordKind.TEAM_REPOS, [{"id": "tr-1", "team_id": TEAM_ID, "repo_id": REPO_ID}])
    return store
