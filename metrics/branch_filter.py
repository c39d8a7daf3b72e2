"""Branch-mode row filtering shared by every metric."""

from typing import Any, Dict, List, Optional, Sequence, TypeVar

from models.data_models import BranchMode, RepoBranchConfig

RowT = TypeVar("RowT")


def _get(row: Any, name: str) -> Any:
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)


def _has(row: Any, name: str) -> bool:
    if isinstance(row, dict):
        return name in row
    return hasattr(row, name)


def default_branch_field(row: Any) -> str:
    """base_branch for pull request rows, head_branch for workflow run rows."""
    return "base_branch" if _has(row, "base_branch") else "head_branch"


def branch_filter_active(mode: BranchMode, custom_branches: Optional[Sequence[str]] = None) -> bool:
    """True when ``mode`` actually narrows rows."""
    mode = BranchMode(mode)
    if mode == BranchMode.ALL:
        return False
    if mode == BranchMode.CUSTOM:
        return bool(custom_branches)
    return True


def filter_by_branch_mode(
    rows: Sequence[RowT],
    mode: BranchMode,
    repo_branch_map: Dict[str, RepoBranchConfig],
    branch_field: Optional[str] = None,
    custom_branches: Optional[Sequence[str]] = None
) -> List[RowT]:
    """
    Keep only rows on the branch selected by ``mode``.

    - all: every row
    - custom: rows whose branch is in ``custom_branches`` (every row when no
      list is given)
    - prod/stage/dev: rows whose branch equals the repo's configured branch
      for that environment, compared case-sensitively. Repos without a
      configured branch contribute nothing.

    Applying the same filter twice returns the same rows.

    Args:
        rows: Dicts or models carrying ``repo_id`` and a branch field
        mode: Branch mode
        repo_branch_map: repo_id -> RepoBranchConfig
        branch_field: Field to compare; defaults per row to base_branch
            (pull requests) or head_branch (workflow runs)
        custom_branches: Branch names for custom mode

    Returns:
        Surviving rows in their original order
    """
    mode = BranchMode(mode)

    if mode == BranchMode.ALL:
        return list(rows)

    if mode == BranchMode.CUSTOM:
        if not custom_branches:
            return list(rows)
        allowed = set(custom_branches)
        return [
            row for row in rows
            if _get(row, branch_field or default_branch_field(row)) in allowed
        ]

    kept = []
    for row in rows:
        config = repo_branch_map.get(_get(row, "repo_id"))
        expected = config.branch_for(mode) if config else None
        if not expected:
            continue
        if _get(row, branch_field or default_branch_field(row)) == expected:
            kept.append(row)
    return kept
