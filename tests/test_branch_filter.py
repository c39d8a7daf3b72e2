"""Tests for branch-mode filtering."""

import pytest

from conftest import OTHER_REPO_ID, REPO_ID
from metrics.branch_filter import branch_filter_active, default_branch_field, filter_by_branch_mode
from models.data_models import BranchMode, PullRequest, RepoBranchConfig, WorkflowRun


@pytest.fixture
def branch_map():
    return {
        REPO_ID: RepoBranchConfig(dev_branch="develop", stage_branch="staging", prod_branch="main"),
        OTHER_REPO_ID: RepoBranchConfig(dev_branch="dev", stage_branch=None, prod_branch="master"),
    }


@pytest.fixture
def pr_rows():
    return [
        {"id": "1", "repo_id": REPO_ID, "base_branch": "main"},
        {"id": "2", "repo_id": REPO_ID, "base_branch": "develop"},
        {"id": "3", "repo_id": REPO_ID, "base_branch": "Main"},
        {"id": "4", "repo_id": OTHER_REPO_ID, "base_branch": "master"},
        {"id": "5", "repo_id": OTHER_REPO_ID, "base_branch": "staging"},
        {"id": "6", "repo_id": "unknown-repo", "base_branch": "main"},
    ]


def ids(rows):
    return [row["id"] if isinstance(row, dict) else row.id for row in rows]


class TestFilterByBranchMode:
    """Tests for filter_by_branch_mode()."""

    def test_all_keeps_everything(self, pr_rows, branch_map):
        assert filter_by_branch_mode(pr_rows, BranchMode.ALL, branch_map) == pr_rows

    def test_prod_uses_each_repos_branch(self, pr_rows, branch_map):
        assert ids(filter_by_branch_mode(pr_rows, BranchMode.PROD, branch_map)) == ["1", "4"]

    def test_comparison_is_case_sensitive(self, pr_rows, branch_map):
        assert "3" not in ids(filter_by_branch_mode(pr_rows, BranchMode.PROD, branch_map))

    def test_dev(self, pr_rows, branch_map):
        assert ids(filter_by_branch_mode(pr_rows, BranchMode.DEV, branch_map)) == ["2"]

    def test_unconfigured_branch_contributes_nothing(self, pr_rows, branch_map):
        """OTHER_REPO has no stage branch, so its 'staging' PR is dropped too."""
        assert ids(filter_by_branch_mode(pr_rows, BranchMode.STAGE, branch_map)) == []

    def test_repo_missing_from_map_dropped(self, pr_rows, branch_map):
        assert "6" not in ids(filter_by_branch_mode(pr_rows, BranchMode.PROD, branch_map))

    def test_custom_branches(self, pr_rows, branch_map):
        kept = filter_by_branch_mode(
            pr_rows, BranchMode.CUSTOM, branch_map, custom_branches=["main", "staging"]
        )
        assert ids(kept) == ["1", "5", "6"]

    def test_custom_without_list_keeps_everything(self, pr_rows, branch_map):
        assert filter_by_branch_mode(pr_rows, BranchMode.CUSTOM, branch_map) == pr_rows

    def test_mode_given_as_string(self, pr_rows, branch_map):
        assert ids(filter_by_branch_mode(pr_rows, "PROD", branch_map)) == ["1", "4"]

    def test_idempotent(self, pr_rows, branch_map):
        once = filter_by_branch_mode(pr_rows, BranchMode.PROD, branch_map)
        assert filter_by_branch_mode(once, BranchMode.PROD, branch_map) == once

    def test_does_not_mutate_input(self, pr_rows, branch_map):
        before = list(pr_rows)
        filter_by_branch_mode(pr_rows, BranchMode.PROD, branch_map)
        assert pr_rows == before

    def test_workflow_runs_use_head_branch(self, branch_map):
        runs = [
            WorkflowRun(id="r1", repo_id=REPO_ID, head_branch="main"),
            WorkflowRun(id="r2", repo_id=REPO_ID, head_branch="feature/x"),
        ]
        assert ids(filter_by_branch_mode(runs, BranchMode.PROD, branch_map)) == ["r1"]

    def test_explicit_branch_field(self, branch_map):
        prs = [
            PullRequest(id="p1", repo_id=REPO_ID, base_branch="develop", head_branch="main"),
            PullRequest(id="p2", repo_id=REPO_ID, base_branch="main", head_branch="feature/y"),
        ]
        kept = filter_by_branch_mode(prs, BranchMode.PROD, branch_map, branch_field="head_branch")
        assert ids(kept) == ["p1"]


class TestHelpers:
    """Tests for the small branch helpers."""

    def test_default_branch_field(self):
        assert default_branch_field({"base_branch": None}) == "base_branch"
        assert default_branch_field({"head_branch": "main"}) == "head_branch"
        assert default_branch_field(WorkflowRun(id="r", repo_id="x")) == "head_branch"
        assert default_branch_field(PullRequest(id="p", repo_id="x")) == "base_branch"

    @pytest.mark.parametrize("mode, branches, expected", [
        (BranchMode.ALL, None, False),
        (BranchMode.CUSTOM, None, False),
        (BranchMode.CUSTOM, [], False),
        (BranchMode.CUSTOM, ["main"], True),
        (BranchMode.PROD, None, True),
        ("dev", None, True),
    ])
    def test_branch_filter_active(self, mode, branches, expected):
        assert branch_filter_active(mode, branches) is expected
