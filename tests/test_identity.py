"""Tests for deterministic record ids."""

import hashlib
import uuid

from utils.identity import (
    INCIDENT_NAMESPACE,
    PULL_REQUEST_NAMESPACE,
    WORKFLOW_RUN_NAMESPACE,
    incident_key_for_run,
    is_uuid,
    resolve,
    stable_id,
    workflow_run_id,
)


def _hex_layout_uuid(namespace: str, key: str) -> str:
    """Same construction spelled out on the hex digest."""
    hex_digest = hashlib.sha1((namespace + key).encode("utf-8")).hexdigest()
    variant = (int(hex_digest[16:18], 16) & 0x3F) | 0x80
    return "-".join([
        hex_digest[0:8],
        hex_digest[8:12],
        "5" + hex_digest[13:16],
        format(variant, "02x") + hex_digest[18:20],
        hex_digest[20:32],
    ])


class TestResolve:
    """Tests for resolve()."""

    def test_deterministic(self):
        assert resolve(WORKFLOW_RUN_NAMESPACE, "20118081300") == resolve(WORKFLOW_RUN_NAMESPACE, "20118081300")

    def test_matches_hex_layout(self):
        for namespace, key in [
            (INCIDENT_NAMESPACE, "workflow-20118081300"),
            (WORKFLOW_RUN_NAMESPACE, "1"),
            (PULL_REQUEST_NAMESPACE, "repo:42"),
        ]:
            assert resolve(namespace, key) == _hex_layout_uuid(namespace, key)

    def test_is_valid_version_5_uuid(self):
        value = uuid.UUID(resolve(INCIDENT_NAMESPACE, "workflow-7"))
        assert value.version == 5
        assert value.variant == uuid.RFC_4122

    def test_namespace_separates_keys(self):
        assert resolve(WORKFLOW_RUN_NAMESPACE, "7") != resolve(INCIDENT_NAMESPACE, "7")

    def test_output_is_lowercase(self):
        value = resolve(WORKFLOW_RUN_NAMESPACE, "abc")
        assert value == value.lower()
        assert is_uuid(value)


class TestStableId:
    """Tests for stable_id()."""

    def test_keeps_upstream_uuid(self):
        upstream = "AAAAAAAA-0000-4000-8000-000000000001"
        assert stable_id(upstream, PULL_REQUEST_NAMESPACE, "repo:1") == upstream.lower()

    def test_resolves_non_uuid(self):
        assert stable_id("None", INCIDENT_NAMESPACE, "workflow-5") == resolve(INCIDENT_NAMESPACE, "workflow-5")
        assert stable_id(12345, WORKFLOW_RUN_NAMESPACE, "12345") == resolve(WORKFLOW_RUN_NAMESPACE, "12345")

    def test_no_key_returns_none(self):
        assert stable_id(None, WORKFLOW_RUN_NAMESPACE, None) is None
        assert stable_id("not-a-uuid", WORKFLOW_RUN_NAMESPACE, "") is None


class TestHelpers:
    """Tests for the run/incident helpers."""

    def test_is_uuid(self):
        assert is_uuid("aaaaaaaa-0000-4000-8000-000000000001")
        assert not is_uuid("None")
        assert not is_uuid(None)
        assert not is_uuid("aaaaaaaa00004000800000000000001")

    def test_workflow_run_id_accepts_int_or_str(self):
        assert workflow_run_id(102) == workflow_run_id("102")

    def test_incident_key_for_run(self):
        assert incident_key_for_run(102) == "workflow-102"

    def test_derived_and_provider_incident_keys_converge(self):
        """An incident keyed 'workflow-<n>' resolves to the derived incident id."""
        provider_id = stable_id("None", INCIDENT_NAMESPACE, "workflow-102")
        derived_id = resolve(INCIDENT_NAMESPACE, incident_key_for_run(102))
        assert provider_id == derived_id
