"""Data models for the DORA metrics pipeline."""

from models.config_models import Config, CredentialsConfig
from models.data_models import (
    BranchMode,
    FetchBatch,
    Incident,
    PullRequest,
    RepoBranchConfig,
    WorkflowRun,
)

__all__ = [
    "Config",
    "CredentialsConfig",
    "BranchMode",
    "FetchBatch",
    "Incident",
    "PullRequest",
    "RepoBranchConfig",
    "WorkflowRun",
]
