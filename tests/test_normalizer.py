"""
Tests for payload normalization and ingestion.

Normalization is tested on plain payloads; ingestion runs against the
in-memory store fixture so upsert idempotence can be checked on row counts.
"""

import copy
import logging
from datetime import datetime, timezone

from conftest import BATCH_ID, PR_UUID_1, PR_UUID_2, REPO_ID
from ingestion.normalizer import (
    RepoSection,
    SkippedSection,
    classify_section,
    ingest_payload,
    iter_sections,
    normalize_payload,
)
from storage.supabase_client import RecordKind
from utils.identity import INCIDENT_NAMESPACE, PULL_REQUEST_NAMESPACE, resolve, workflow_run_id

UTC = timezone.utc


class TestSections:
    """Tests for section classification."""

    def test_error_section_skipped(self):
        section = classify_section({"org_name": "acme", "repo_name": "x", "error": "boom"}, 0)
        assert isinstance(section, SkippedSection)
        assert section.label == "acme/x"
        assert "boom" in section.reason

    def test_non_dict_section_skipped(self):
        section = classify_section("garbage", 3)
        assert isinstance(section, SkippedSection)
        assert section.label == "repos[3]"

    def test_related_prs_collected(self):
        section = classify_section({
            "pull_requests": [{"number": 1}],
            "deployments": [{"related_prs": [{"number": 2}]}, "bad", {"related_prs": None}],
        }, 0)
        assert isinstance(section, RepoSection)
        assert [pr["number"] for pr in section.pull_requests] == [1, 2]

    def test_data_wrapper_and_top_level_runs(self):
        payload = {"data": {"repos": [{"pull_requests": []}], "workflow_runs": [{"id": 1}]}}
        sections = list(iter_sections(payload))
        assert len(sections) == 2
        assert sections[1].label == "workflow_runs"
        assert sections[1].workflow_runs == [{"id": 1}]

    def test_non_dict_payload_has_no_sections(self):
        assert list(iter_sections(None)) == []
        assert list(iter_sections("Internal Server Error")) == []


class TestNormalizePayload:
    """Tests for normalize_payload()."""

    def test_sample_payload(self, sample_payload):
        batch = normalize_payload(sample_payload, REPO_ID, BATCH_ID)

        assert [pr.pr_no for pr in batch.pull_requests] == [1, 2, 3]
        assert [run.run_id for run in batch.workflow_runs] == [101, 102, 103]
        assert len(batch.incidents) == 1
        assert batch.skipped_sections == 1
        assert batch.skipped_count == 0

    def test_first_pr_occurrence_wins(self, sample_payload):
        batch = normalize_payload(sample_payload, REPO_ID, BATCH_ID)
        pr1 = batch.pull_requests[0]
        assert pr1.id == PR_UUID_1
        assert pr1.title == "Add login"
        assert pr1.author == "alice"
        assert pr1.commits == 3
        assert pr1.cycle_time == 1800.0
        assert batch.pull_requests[1].id == PR_UUID_2
        assert batch.pull_requests[1].author == "bob"

    def test_pr_without_uuid_gets_derived_id(self, sample_payload):
        batch = normalize_payload(sample_payload, REPO_ID, BATCH_ID)
        pr3 = batch.pull_requests[2]
        assert pr3.id == resolve(PULL_REQUEST_NAMESPACE, f"{REPO_ID}:3")
        assert pr3.state == "MERGED"

    def test_every_record_carries_batch_and_repo(self, sample_payload):
        batch = normalize_payload(sample_payload, REPO_ID, BATCH_ID)
        for record in batch.pull_requests + batch.workflow_runs + batch.incidents:
            assert record.repo_id == REPO_ID
            assert record.fetch_data_id == BATCH_ID

    def test_run_ids_from_id_run_id_and_name(self, sample_payload):
        batch = normalize_payload(sample_payload, REPO_ID, BATCH_ID)
        runs = {run.run_id: run for run in batch.workflow_runs}
        assert runs[101].id == workflow_run_id(101)
        assert runs[102].id == workflow_run_id(102)
        assert runs[103].id == workflow_run_id(103)
        assert runs[103].created_at == datetime(2025, 1, 4, 12, 0, tzinfo=UTC)
        assert runs[101].actor == "alice"
        assert runs[101].workflow_id == "77"

    def test_provider_incident_linked_to_run(self, sample_payload):
        incident = normalize_payload(sample_payload, REPO_ID, BATCH_ID).incidents[0]
        assert incident.id == resolve(INCIDENT_NAMESPACE, "workflow-102")
        assert incident.workflow_run_id == workflow_run_id(102)
        assert incident.pr_no == "102"
        assert incident.recovery_seconds == 25 * 3600

    def test_provider_details_mapped(self):
        payload = {"repos": [{
            "pull_requests": [{
                "number": 5,
                "created_at": "2025-01-02T09:00:00Z",
                "state_changed_at": "2025-01-02T12:00:00Z",
                "url": "https://github.com/acme/api/pull/5",
                "provider": "github",
                "first_response_time": "600",
                "rework_time": 1200,
                "merge_time": 300.5,
                "merge_to_deploy": "soon",
            }],
            "incidents": [{
                "key": "workflow-9",
                "creation_date": "2025-01-02T10:00:00Z",
                "title": "CI failed on main",
                "status": "IncidentStatus.RESOLVED",
                "incident_type": "workflow_failure",
                "url": "https://github.com/acme/api/actions/runs/9",
                "provider": "IncidentProvider.GITHUB",
                "summary": "Tests failed",
                "assigned_to": {"username": "carol", "email": "carol@example.com"},
            }],
        }]}

        batch = normalize_payload(payload, REPO_ID, BATCH_ID)

        pr = batch.pull_requests[0]
        assert pr.state_changed_at == datetime(2025, 1, 2, 12, 0, tzinfo=UTC)
        assert pr.url == "https://github.com/acme/api/pull/5"
        assert pr.provider == "github"
        assert (pr.first_response_time, pr.rework_time, pr.merge_time) == (600.0, 1200.0, 300.5)
        assert pr.merge_to_deploy is None

        incident = batch.incidents[0]
        assert incident.title == "CI failed on main"
        assert incident.status == "RESOLVED"
        assert incident.provider == "GITHUB"
        assert incident.incident_type == "workflow_failure"
        assert incident.summary == "Tests failed"
        assert incident.assigned_to == "carol"

    def test_bad_records_dropped_and_counted(self, caplog):
        payload = {"repos": [{
            "pull_requests": [
                {"title": "no number, no id", "created_at": "2025-01-01T00:00:00Z"},
                {"number": 5},
                "not a dict",
            ],
            "workflow_runs": [
                {"name": "no id anywhere", "created_at": "2025-01-01T00:00:00Z"},
                {"id": 9, "conclusion": "success"},
            ],
            "incidents": [
                {"id": "None", "creation_date": "2025-01-01T00:00:00Z"},
                {"key": "workflow-9"},
                {"key": "workflow-10", "creation_date": "2025-01-02T00:00:00Z",
                 "resolved_date": "2025-01-01T00:00:00Z"},
            ],
        }]}

        with caplog.at_level(logging.WARNING):
            batch = normalize_payload(payload, REPO_ID, BATCH_ID)

        assert batch.is_empty
        assert batch.skipped_records == {"pull_requests": 3, "workflow_runs": 2, "incidents": 3}
        assert batch.skipped_count == 8
        assert "dropping" in caplog.text

    def test_duplicate_runs_collapse(self):
        run = {"id": 7, "conclusion": "success", "created_at": "2025-01-01T00:00:00Z"}
        payload = {"repos": [{"workflow_runs": [run, dict(run, run_id=7)]}, {"workflow_runs": [run]}]}
        assert len(normalize_payload(payload, REPO_ID, BATCH_ID).workflow_runs) == 1

    def test_missing_repos_is_nothing_to_do(self):
        batch = normalize_payload({"message": "ok"}, REPO_ID, BATCH_ID)
        assert batch.is_empty
        assert batch.skipped_sections == 0

    def test_does_not_mutate_payload(self, sample_payload):
        original = copy.deepcopy(sample_payload)
        normalize_payload(sample_payload, REPO_ID, BATCH_ID)
        assert sample_payload == original


class TestIngestPayload:
    """Tests for ingest_payload() against the in-memory store."""

    def test_writes_every_kind(self, store, sample_payload):
        result = ingest_payload(store, sample_payload, REPO_ID, BATCH_ID)

        assert result.ok
        assert (result.pull_requests, result.workflow_runs, result.incidents) == (3, 3, 1)
        assert result.skipped_sections == 1
        assert store.count(RecordKind.PULL_REQUESTS) == 3
        assert store.count(RecordKind.WORKFLOW_RUNS) == 3
        assert store.count(RecordKind.INCIDENTS) == 1

    def test_rows_are_json_ready(self, store, sample_payload):
        ingest_payload(store, sample_payload, REPO_ID, BATCH_ID)
        row = next(r for r in store.rows(RecordKind.PULL_REQUESTS) if r["id"] == PR_UUID_1)
        assert isinstance(row["created_at"], str)
        assert row["state"] == "MERGED"

    def test_second_ingest_does_not_add_rows(self, store, sample_payload):
        """Re-running ingestion on the same batch leaves row counts unchanged."""
        ingest_payload(store, sample_payload, REPO_ID, BATCH_ID)
        first = {kind: store.count(kind) for kind in RecordKind}
        snapshot = copy.deepcopy(store.tables)

        ingest_payload(store, sample_payload, REPO_ID, BATCH_ID)

        assert {kind: store.count(kind) for kind in RecordKind} == first
        assert store.tables == snapshot

    def test_failed_kind_does_not_block_others(self, store, sample_payload):
        store.fail(RecordKind.INCIDENTS, "upsert")

        result = ingest_payload(store, sample_payload, REPO_ID, BATCH_ID)

        assert not result.ok
        assert "incidents" in result.errors
        assert store.count(RecordKind.PULL_REQUESTS) == 3
        assert store.count(RecordKind.WORKFLOW_RUNS) == 3
        assert store.count(RecordKind.INCIDENTS) == 0

    def test_empty_payload_writes_nothing(self, store):
        result = ingest_payload(store, {"repos": []}, REPO_ID, BATCH_ID)
        assert result.ok
        assert store.upsert_calls == []

    def test_result_serializes(self, store, sample_payload):
        summary = ingest_payload(store, sample_payload, REPO_ID, BATCH_ID).model_dump()
        assert summary == {
            "pull_requests": 3,
            "workflow_runs": 3,
            "incidents": 1,
            "skipped_records": 0,
            "skipped_sections": 1,
            "errors": {},
        }
