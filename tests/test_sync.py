"""Tests for the state to control-plane patch transform."""

import json

import pytest

from stackctl.errors import SyncError
from stackctl.schemas import (
    CapturedOutput,
    ComponentStatus,
    LifecycleOperation,
    LicenseRef,
    LockedParameter,
    RunStatus,
    Scalar,
    SecretRef,
    StackStatus,
    StateManifest,
    StateStep,
)
from stackctl.sync import DirectoryPatchSink, guess_secret_kind, transform_state_to_patch


@pytest.fixture
def state():
    return StateManifest(
        name="demo",
        status=StackStatus.INCOMPLETE,
        order=["network", "app"],
        stack_parameters=[
            LockedParameter(name="hub.deploymentId", value=Scalar("id")),
            LockedParameter(name="size", value=Scalar("m")),
            LockedParameter(name="size", component="db", value=Scalar("m")),
            LockedParameter(name="size", component="web", value=Scalar("l")),
            LockedParameter(name="empty", value=Scalar("")),
            LockedParameter(name="db.password", kind="secret", value=SecretRef(id="pw-1")),
            LockedParameter(name="api.token", value=Scalar("plain-token")),
            LockedParameter(name="product", kind="license", value=LicenseRef(id="lic-1")),
        ],
        stack_outputs=[
            CapturedOutput(name="network:vpc.id", value="vpc-1", brief="VPC"),
            CapturedOutput(name="admin", kind="secret/password", value="pw"),
        ],
        components={
            "network": StateStep(
                status=ComponentStatus.SUCCESS,
                verb="deploy",
                captured_outputs=[CapturedOutput(name="vpc.id", component="network", value="vpc-1")],
            ),
            "app": StateStep(status=ComponentStatus.FAILED, message="boom"),
        },
        provides={"vpc": ["network"]},
        operations=[
            LifecycleOperation(id="done", operation="deploy", status=RunStatus.SUCCESS),
            LifecycleOperation(id="live", operation="deploy", status=RunStatus.RUNNING),
        ],
    )


class TestTransform:
    """Tests for transform_state_to_patch."""

    def test_parameters(self, state):
        parameters = transform_state_to_patch(state).parameters
        by_key = {(p["name"], p.get("component")): p for p in parameters}

        assert ("hub.deploymentId", None) not in by_key
        assert ("empty", None) not in by_key
        assert ("size", "db") not in by_key
        assert by_key[("size", "web")]["value"] == "l"
        assert by_key[("db.password", None)]["value"] == {"kind": "password", "password": "pw-1"}
        assert by_key[("api.token", None)]["value"] == {"kind": "token", "token": "plain-token"}
        assert by_key[("product", None)] == {"name": "product", "kind": "license", "value": "lic-1", "messenger": "stackctl"}

    def test_outputs(self, state):
        outputs = transform_state_to_patch(state).outputs
        assert outputs[0] == {
            "name": "vpc.id", "component": "network", "value": "vpc-1", "brief": "VPC", "messenger": "stackctl"
        }
        assert outputs[1]["kind"] == "secret"
        assert outputs[1]["value"] == {"kind": "password", "password": "pw"}

    def test_status_and_components(self, state):
        patch = transform_state_to_patch(state).to_dict()
        assert patch["status"]["status"] == "incomplete"
        components = patch["status"]["components"]
        assert [c["name"] for c in components] == ["network", "app"]
        assert components[1] == {"name": "app", "status": "failed", "outputs": [], "message": "boom"}
        assert patch["componentsEnabled"] == ["network", "app"]
        assert [o["id"] for o in patch["inflightOperations"]] == ["live"]
        assert patch["provides"] == {"vpc": ["network"]}

    def test_pure(self, state):
        assert transform_state_to_patch(state) == transform_state_to_patch(state)


class TestGuessSecretKind:
    def test_declared_kind(self):
        assert guess_secret_kind("secret/certificate", "x") == "certificate"

    def test_from_name(self):
        assert guess_secret_kind(None, "tls.key") == "privateKey"
        assert guess_secret_kind("secret", "admin.password") == "password"
        assert guess_secret_kind(None, "whatever") == "text"


class TestDirectoryPatchSink:
    """Tests for writing patches to an outbox."""

    def test_send(self, state, tmp_path):
        sink = DirectoryPatchSink(tmp_path / "outbox")
        patch = transform_state_to_patch(state)
        sink.send(patch)
        data = json.loads((tmp_path / "outbox" / "demo.patch.json").read_text())
        assert data["name"] == "demo"

    def test_send_failure(self, state, tmp_path):
        blocker = tmp_path / "outbox"
        blocker.write_text("")
        with pytest.raises(SyncError):
            DirectoryPatchSink(blocker).send(transform_state_to_patch(state))
