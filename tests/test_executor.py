"""Tests for stackctl executor module.

Tests the complete lifecycle of a stack instance:
elaborate manifest -> Request -> component runs -> StateManifest
"""

import pytest

from stackctl.errors import ExecutionError, InterruptedRun, ManifestError, ParameterResolutionError, StateIOError
from stackctl.executor import LifecycleExecutor, select_components, stack_status
from stackctl.journal import load_state
from stackctl.manifest import load_elaborate_manifest
from stackctl.schemas import (
    Component,
    ComponentStatus,
    Request,
    RunStatus,
    StackStatus,
    StateManifest,
    StateStep,
)
from stackctl.secrets import DictSecretStore
from stackctl.sync import DirectoryPatchSink

from conftest import write_script


def _request(elaborate_path, state_path, verb="deploy", **kwargs):
    return Request(
        verb=verb,
        manifest_path=str(elaborate_path),
        state_paths=(str(state_path),),
        relay_output=False,
        **kwargs,
    )


@pytest.fixture
def executor(config, warnings):
    return LifecycleExecutor(config, warnings, environ={"PATH": "/usr/bin:/bin", "USER": "tester"})


# =============================================================================
# SELECTION
# =============================================================================


class TestSelectComponents:
    """Tests for the effective component sub-sequence."""

    @pytest.fixture
    def components(self):
        return [Component(name=n) for n in ("a", "b", "c", "d")]

    def test_all_by_default(self, components):
        """Without filters every component is selected in order."""
        request = Request(verb="deploy", manifest_path="x")
        assert [c.name for c in select_components(components, request, None)] == ["a", "b", "c", "d"]

    def test_offset_and_limit(self, components):
        """Offset and limit are both inclusive."""
        request = Request(verb="deploy", manifest_path="x", offset="b", limit="c")
        assert [c.name for c in select_components(components, request, None)] == ["b", "c"]

    def test_components_filter_keeps_order(self, components):
        """The filter keeps execution order, not command-line order."""
        request = Request(verb="deploy", manifest_path="x", components=("d", "a"))
        assert [c.name for c in select_components(components, request, None)] == ["a", "d"]

    def test_unknown_component(self, components):
        """Naming a component the stack does not have is a manifest error."""
        request = Request(verb="deploy", manifest_path="x", offset="zzz")
        with pytest.raises(ManifestError, match="zzz"):
            select_components(components, request, None)

    def test_guess_starts_at_first_incomplete(self, components):
        """Guessing skips components whose last deploy succeeded."""
        prior = StateManifest(components={
            "a": StateStep(status=ComponentStatus.SUCCESS, verb="deploy"),
            "b": StateStep(status=ComponentStatus.FAILED, verb="deploy"),
        })
        request = Request(verb="deploy", manifest_path="x", guess_component=True)
        assert [c.name for c in select_components(components, request, prior)] == ["b", "c", "d"]

    def test_guess_everything_done(self, components):
        """When every component is done nothing is selected."""
        prior = StateManifest(components={
            c.name: StateStep(status=ComponentStatus.SUCCESS, verb="deploy") for c in components
        })
        request = Request(verb="deploy", manifest_path="x", guess_component=True)
        assert select_components(components, request, prior) == []

    def test_guess_undeploy_treats_pending_as_done(self, components):
        """For undeploy, components never deployed count as done."""
        reversed_components = list(reversed(components))
        prior = StateManifest(components={
            "d": StateStep(status=ComponentStatus.PENDING),
            "c": StateStep(status=ComponentStatus.SUCCESS, verb="undeploy"),
            "b": StateStep(status=ComponentStatus.SUCCESS, verb="deploy"),
        })
        request = Request(verb="undeploy", manifest_path="x", guess_component=True)
        selected = select_components(reversed_components, request, prior)
        assert [c.name for c in selected] == ["b", "a"]


class TestStackStatus:
    """Tests for the aggregate stack status."""

    def test_deployed(self):
        components = [Component(name="a"), Component(name="b")]
        state = StateManifest(components={
            "a": StateStep(status=ComponentStatus.SUCCESS, verb="deploy"),
            "b": StateStep(status=ComponentStatus.SUCCESS, verb="deploy"),
        })
        assert stack_status(state, components) == StackStatus.DEPLOYED

    def test_incomplete(self):
        components = [Component(name="a"), Component(name="b")]
        state = StateManifest(components={
            "a": StateStep(status=ComponentStatus.SUCCESS, verb="deploy"),
            "b": StateStep(status=ComponentStatus.FAILED, verb="deploy"),
        })
        assert stack_status(state, components) == StackStatus.INCOMPLETE

    def test_undeployed(self):
        components = [Component(name="a"), Component(name="b")]
        state = StateManifest(components={"a": StateStep(status=ComponentStatus.SUCCESS, verb="undeploy")})
        assert stack_status(state, components) == StackStatus.UNDEPLOYED


# =============================================================================
# DEPLOY
# =============================================================================


class TestDeploy:
    """Tests for a full deploy."""

    def test_runs_components_in_dependency_order(self, executor, elaborate_path, state_path):
        """network provides vpc, so it runs before app."""
        result = executor.execute(_request(elaborate_path, state_path))

        assert result.success
        assert result.error is None
        assert result.executed == ["network", "app"]
        assert result.operation.status == RunStatus.SUCCESS

    def test_state_records_steps_and_outputs(self, executor, elaborate_path, state_path):
        """The state holds steps, captured outputs and the stack status."""
        executor.execute(_request(elaborate_path, state_path))
        state = load_state([state_path])

        assert state.status == StackStatus.DEPLOYED
        assert state.order == ["network", "app"]
        network = state.get_step("network")
        assert network.status == ComponentStatus.SUCCESS
        assert network.verb == "deploy"
        assert network.raw_outputs["component"] == "network"
        assert [(o.name, o.value) for o in network.captured_outputs] == [("vpc.id", "vpc-123")]

    def test_outputs_flow_into_dependents(self, executor, elaborate_path, state_path):
        """app sees the vpc.id output of network and the expanded app.url."""
        result = executor.execute(_request(elaborate_path, state_path))
        app = result.state.get_step("app")

        assert app.raw_outputs["seen.vpc"] == "vpc-123"
        assert app.captured_outputs[0].value == "https://example.com/app"
        parameters = {p.name: p.value.value for p in app.parameters}
        assert parameters == {"app.url": "https://example.com/app", "vpc.id": "vpc-123"}

    def test_stack_outputs_expanded(self, executor, elaborate_path, state_path):
        """Stack outputs are expanded once the stack is deployed."""
        result = executor.execute(_request(elaborate_path, state_path))
        assert [(o.name, o.value) for o in result.state.stack_outputs] == [
            ("endpoint", "https://example.com/app")
        ]

    def test_provides_recorded(self, executor, elaborate_path, state_path):
        """Declared and dynamic capabilities are recorded with their provider."""
        result = executor.execute(_request(elaborate_path, state_path))
        assert result.state.provides == {"vpc": ["network"], "dns": ["network"]}

    def test_runtime_parameters(self, executor, elaborate_path, state_path):
        """hub.deploymentId is generated once and kept across runs."""
        first = executor.execute(_request(elaborate_path, state_path))
        deployment_id = first.state.get_parameter("hub.deploymentId").value.value
        assert first.state.get_parameter("hub.stackName").value.value == "demo"

        second = executor.execute(_request(elaborate_path, state_path))
        assert second.state.get_parameter("hub.deploymentId").value.value == deployment_id

    def test_operation_log(self, executor, elaborate_path, state_path):
        """Every run appends an operation with one phase per component."""
        executor.execute(_request(elaborate_path, state_path))
        executor.execute(_request(elaborate_path, state_path, components=("app",)))
        state = load_state([state_path])

        assert len(state.operations) == 2
        first, second = state.operations
        assert first.initiator == "tester"
        assert [(p.phase, p.status) for p in first.phases] == [("network", "success"), ("app", "success")]
        assert second.options == {"components": ["app"]}
        assert [p.phase for p in second.phases] == ["app"]

    def test_engine_variables_in_environment(self, executor, elaborate_path, state_path, stack_dir):
        """Component processes receive HUB_* variables."""
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            """\
            echo "Outputs:"
            echo "vpc.id = vpc-9"
            echo "stack.state = $HUB_STATE"
            echo "base.dir = $HUB_BASE_DIR"
            """,
        )
        result = executor.execute(_request(elaborate_path, state_path, components=("network",)))
        raw = result.state.get_step("network").raw_outputs
        assert raw["stack.state"] == str(state_path.resolve())
        assert raw["base.dir"] == str(stack_dir.resolve())


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    """Tests for component failures, force and resume."""

    def _break(self, stack_dir, component="network"):
        write_script(stack_dir / "components" / component, "deploy.sh", "echo broken >&2\nexit 3\n")

    def test_failure_stops_the_run(self, executor, elaborate_path, state_path, stack_dir):
        """A failing component stops the run; later ones do not run."""
        self._break(stack_dir)
        result = executor.execute(_request(elaborate_path, state_path))

        assert not result.success
        assert isinstance(result.error, ExecutionError)
        assert "exited with code 3" in str(result.error)
        assert result.failed == ["network"]
        assert result.executed == []

        state = load_state([state_path])
        assert state.get_step("network").status == ComponentStatus.FAILED
        assert state.get_step("app") is None
        assert state.status == StackStatus.INCOMPLETE
        assert state.operations[-1].status == RunStatus.FAILED

    def test_force_marks_rest_skipped(self, executor, elaborate_path, state_path, stack_dir):
        """With force, components after a failure are marked skipped."""
        self._break(stack_dir)
        result = executor.execute(_request(elaborate_path, state_path, force=True))

        assert not result.success
        assert result.skipped == ["app"]
        assert result.state.get_step("app").status == ComponentStatus.SKIPPED

    def test_resume_with_guess(self, executor, elaborate_path, state_path, stack_dir):
        """After fixing the failure, guess resumes at the failed component."""
        write_script(stack_dir / "components" / "app", "deploy.sh", "exit 1\n")
        first = executor.execute(_request(elaborate_path, state_path))
        assert first.executed == ["network"]
        assert first.failed == ["app"]

        write_script(stack_dir / "components" / "app", "deploy.sh", "echo 'Outputs:'\necho 'app.endpoint = ok'\n")
        second = executor.execute(_request(elaborate_path, state_path, guess_component=True))

        assert second.success
        assert second.executed == ["app"]
        assert second.state.status == StackStatus.DEPLOYED

    def test_missing_implementation(self, executor, elaborate_path, state_path, stack_dir):
        """A component directory without the verb fails the component."""
        (stack_dir / "components" / "network" / "deploy.sh").unlink()
        result = executor.execute(_request(elaborate_path, state_path))

        assert not result.success
        assert "No `deploy` implementation" in str(result.error)

    def test_unresolvable_parameter(self, executor, elaborate_path, state_path, stack_dir):
        """vpc.id cannot resolve when network did not report it."""
        write_script(stack_dir / "components" / "network", "deploy.sh", "echo done\n")
        result = executor.execute(_request(elaborate_path, state_path))

        assert isinstance(result.error, ExecutionError)
        assert "vpc.id" in str(result.error)

    def test_unresolvable_parameter_of_app(self, executor, elaborate_path, state_path, stack_dir):
        """An input that cannot be resolved fails the component before it runs."""
        result = executor.execute(_request(elaborate_path, state_path, components=("app",)))

        assert isinstance(result.error, ParameterResolutionError)
        assert result.failed == ["app"]

    def test_force_skips_unresolvable_component(self, executor, elaborate_path, state_path, warnings):
        """With force, a component whose inputs cannot resolve is skipped with a warning."""
        result = executor.execute(_request(elaborate_path, state_path, components=("app",), force=True))

        assert result.success
        assert result.skipped == ["app"]
        assert any("vpc.id" in m for m in warnings.messages)

    def test_optional_component_failure_is_a_warning(self, config, warnings, stack_dir, state_path):
        """Optional components only warn when they fail."""
        from stackctl.elaborate import Elaborator
        from stackctl.manifest import load_stack_manifest, write_manifest
        from dataclasses import replace

        stack = load_stack_manifest(stack_dir / "hub.yaml")
        stack = replace(stack, lifecycle=replace(stack.lifecycle, optional=("app",)))
        path = stack_dir / "optional.elaborate"
        write_manifest(Elaborator(config, warnings, environ={}).elaborate(stack), [path])
        write_script(stack_dir / "components" / "app", "deploy.sh", "exit 1\n")

        executor = LifecycleExecutor(config, warnings, environ={"PATH": "/usr/bin:/bin"})
        result = executor.execute(_request(path, state_path))

        assert result.success
        assert result.failed == ["app"]
        assert any("Optional component `app` failed" in m for m in warnings.messages)


# =============================================================================
# INTERRUPTS AND CHECKPOINTS
# =============================================================================


class TestInterrupts:
    """Tests for SIGINT/SIGTERM during a run."""

    def test_signal_stops_after_current_component(self, executor, elaborate_path, state_path, stack_dir):
        """The running component finishes and is recorded; the next one does not start."""
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            'kill -INT $PPID\nsleep 0.3\necho "Outputs:"\necho "vpc.id = vpc-123"\n',
        )
        result = executor.execute(_request(elaborate_path, state_path))

        assert not result.success
        assert isinstance(result.error, InterruptedRun)
        assert result.error.exit_code == 130
        assert result.executed == ["network"]

        state = load_state([state_path])
        network = state.get_step("network")
        assert network.status == ComponentStatus.SUCCESS
        assert network.captured_outputs[0].value == "vpc-123"
        assert state.get_step("app") is None
        assert state.operations[-1].status == RunStatus.FAILED

    def test_resume_after_interrupt(self, executor, elaborate_path, state_path, stack_dir):
        """Guess resumes at the first component the interrupted run did not complete."""
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            'kill -TERM $PPID\nsleep 0.3\necho "Outputs:"\necho "vpc.id = vpc-123"\n',
        )
        executor.execute(_request(elaborate_path, state_path))
        result = executor.execute(_request(elaborate_path, state_path, guess_component=True))

        assert result.success
        assert result.executed == ["app"]
        assert result.state.status == StackStatus.DEPLOYED


class TestCheckpoints:
    """Tests for state written while a run is in progress."""

    def test_running_step_checkpointed_before_the_child_starts(self, executor, elaborate_path, state_path, stack_dir):
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            'cp "$HUB_STATE" seen.state\necho "Outputs:"\necho "vpc.id = v"\n',
        )
        executor.execute(_request(elaborate_path, state_path, components=("network",)))

        seen = load_state([stack_dir / "components" / "network" / "seen.state"])
        step = seen.get_step("network")
        assert step.status == ComponentStatus.RUNNING
        assert step.timestamps.start is not None
        assert seen.operations[-1].status == RunStatus.RUNNING

    def test_unwritable_checkpoint_stops_the_run(self, executor, elaborate_path, stack_dir, tmp_path):
        """When the state can no longer be written, no further component runs."""
        state_path = tmp_path / "states" / "hub.state"
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            'd=$(dirname "$HUB_STATE")\nrm -rf "$d"\ntouch "$d"\necho "Outputs:"\necho "vpc.id = v"\n',
        )
        write_script(stack_dir / "components" / "app", "deploy.sh", "touch ran\n")

        with pytest.raises(StateIOError, match="hub.state"):
            executor.execute(_request(elaborate_path, state_path))
        assert not (stack_dir / "components" / "app" / "ran").exists()


# =============================================================================
# OTHER VERBS
# =============================================================================


class TestUndeploy:
    """Tests for undeploy after deploy."""

    def test_reverse_order_and_cleanup(self, executor, elaborate_path, state_path):
        """Undeploy runs in reverse and clears outputs and capabilities."""
        executor.execute(_request(elaborate_path, state_path))
        result = executor.execute(_request(elaborate_path, state_path, verb="undeploy"))

        assert result.success
        assert result.executed == ["app", "network"]
        assert result.state.status == StackStatus.UNDEPLOYED
        assert result.state.provides == {}
        assert result.state.captured_outputs == []
        assert result.state.stack_outputs == []
        assert result.state.get_step("network").is_complete("undeploy")


class TestDryRun:
    """Tests for dry runs."""

    def test_dry_run_keeps_state_authoritative(self, executor, elaborate_path, state_path, stack_dir):
        """A dry run runs deploy-test and records the result apart from the step status."""
        write_script(
            stack_dir / "components" / "network",
            "deploy-test.sh",
            """\
            test "$HUB_DRY_RUN" = 1 || exit 1
            echo "Outputs:"
            echo "vpc.id = vpc-planned"
            """,
        )
        result = executor.execute(_request(elaborate_path, state_path, components=("network",), dry_run=True))

        assert result.success
        step = result.state.get_step("network")
        assert step.status == ComponentStatus.PENDING
        assert step.dry_run.status == ComponentStatus.SUCCESS
        assert step.dry_run.captured_outputs[0].value == "vpc-planned"
        assert result.state.captured_outputs == []
        assert result.operation.options == {"dryRun": True, "components": ["network"]}

    def test_dry_run_after_deploy_keeps_real_outputs(self, executor, elaborate_path, state_path, stack_dir):
        """A dry run over a deployed stack leaves the real step and outputs untouched."""
        executor.execute(_request(elaborate_path, state_path))
        before = load_state([state_path])
        write_script(
            stack_dir / "components" / "network",
            "deploy-test.sh",
            'echo "Outputs:"\necho "vpc.id = vpc-planned"\n',
        )
        result = executor.execute(_request(elaborate_path, state_path, components=("network",), dry_run=True))

        assert result.success
        after = load_state([state_path])
        step = after.get_step("network")
        assert step.status == ComponentStatus.SUCCESS
        assert step.captured_outputs == before.get_step("network").captured_outputs
        assert step.dry_run.captured_outputs[0].value == "vpc-planned"
        assert after.captured_outputs == before.captured_outputs
        assert after.stack_outputs == before.stack_outputs
        assert after.status == StackStatus.DEPLOYED


class TestOtherVerbs:
    """Tests for verbs that do not change component status."""

    def test_verb_not_declared_is_skipped(self, config, warnings, stack_dir, state_path):
        """Components whose lifecycle verbs exclude the verb are skipped without a step change."""
        from stackctl.elaborate import Elaborator
        from stackctl.manifest import load_stack_manifest, write_manifest
        from dataclasses import replace

        stack = load_stack_manifest(stack_dir / "hub.yaml")
        stack = replace(stack, components=tuple(
            replace(c, verbs=("deploy", "undeploy")) if c.name == "app" else c for c in stack.components
        ))
        path = stack_dir / "verbs.elaborate"
        write_manifest(Elaborator(config, warnings, environ={}).elaborate(stack), [path])
        write_script(stack_dir / "components" / "network", "backup.sh", "echo backed up\n")

        executor = LifecycleExecutor(config, warnings, environ={"PATH": "/usr/bin:/bin"})
        result = executor.execute(_request(path, state_path, verb="backup"))

        assert result.success
        assert result.executed == ["network"]
        assert result.skipped == ["app"]
        assert result.state.get_step("app") is None
        assert "backup succeeded" in result.state.get_step("network").message


# =============================================================================
# SECRETS AND SYNC
# =============================================================================


class TestSecrets:
    """Tests for just-in-time secret resolution."""

    @pytest.fixture
    def secret_elaborate(self, stack_dir, config, warnings):
        import yaml
        from stackctl.elaborate import Elaborator
        from stackctl.manifest import load_stack_manifest, write_manifest

        hub = yaml.safe_load((stack_dir / "hub.yaml").read_text())
        hub["parameters"].append(
            {"name": "db.password", "kind": "secret", "value": "db-pass-id", "env": "DB_PASSWORD"}
        )
        (stack_dir / "hub.yaml").write_text(yaml.safe_dump(hub, sort_keys=False))
        write_script(
            stack_dir / "components" / "network",
            "deploy.sh",
            'printf %s "$DB_PASSWORD" > seen_password\necho "Outputs:"\necho "vpc.id = v"\n',
        )
        stack = load_stack_manifest(stack_dir / "hub.yaml")
        path = stack_dir / "secret.elaborate"
        write_manifest(Elaborator(config, warnings, environ={}).elaborate(stack), [path])
        return path

    def test_secret_exported_but_not_stored(self, config, warnings, secret_elaborate, state_path, stack_dir):
        """The plaintext reaches the process environment and never the state."""
        executor = LifecycleExecutor(
            config,
            warnings,
            secret_store=DictSecretStore({"db-pass-id": "hunter2"}),
            environ={"PATH": "/usr/bin:/bin"},
        )
        result = executor.execute(_request(secret_elaborate, state_path, components=("network",)))

        assert result.success
        assert (stack_dir / "components" / "network" / "seen_password").read_text() == "hunter2"
        assert "hunter2" not in state_path.read_text()
        assert "hunter2" not in secret_elaborate.read_text()

    def test_force_skips_component_with_missing_secret(self, config, warnings, secret_elaborate, state_path, stack_dir):
        """With force, a secret no store holds skips the component with a warning."""
        executor = LifecycleExecutor(
            config, warnings, secret_store=DictSecretStore(), environ={"PATH": "/usr/bin:/bin"}
        )
        result = executor.execute(_request(secret_elaborate, state_path, components=("network",), force=True))

        assert result.success
        assert result.failed == []
        assert result.skipped == ["network"]
        assert result.state.get_step("network").status == ComponentStatus.SKIPPED
        assert any("db-pass-id" in m for m in warnings.messages)
        assert not (stack_dir / "components" / "network" / "seen_password").exists()

    def test_missing_secret_fails_component(self, config, warnings, secret_elaborate, state_path):
        """A secret no store holds fails the component."""
        executor = LifecycleExecutor(
            config, warnings, secret_store=DictSecretStore(), environ={"PATH": "/usr/bin:/bin"}
        )
        result = executor.execute(_request(secret_elaborate, state_path, components=("network",)))

        assert isinstance(result.error, ParameterResolutionError)
        assert "db-pass-id" in str(result.error)


class TestSync:
    """Tests for the control-plane patch at the end of a run."""

    def test_patch_written(self, config, warnings, elaborate_path, state_path, tmp_path):
        """The sink receives the patch of the final state."""
        outbox = tmp_path / "outbox"
        executor = LifecycleExecutor(
            config, warnings, sink=DirectoryPatchSink(outbox), environ={"PATH": "/usr/bin:/bin"}
        )
        executor.execute(_request(elaborate_path, state_path))
        assert (outbox / "demo.patch.json").exists()

    def test_sync_failure_is_a_warning(self, config, warnings, elaborate_path, state_path, tmp_path):
        """A rejected patch does not fail the deploy."""
        blocker = tmp_path / "outbox"
        blocker.write_text("not a directory")
        executor = LifecycleExecutor(
            config, warnings, sink=DirectoryPatchSink(blocker), environ={"PATH": "/usr/bin:/bin"}
        )
        result = executor.execute(_request(elaborate_path, state_path))

        assert result.success
        assert any("Unable to sync" in m for m in warnings.messages)


# =============================================================================
# INVOKE
# =============================================================================


class TestInvoke:
    """Tests for running a single verb outside a lifecycle operation."""

    def test_invoke_uses_state_outputs(self, executor, elaborate_path, state_path, stack_dir):
        """invoke resolves inputs from the state and leaves it untouched."""
        executor.execute(_request(elaborate_path, state_path))
        before = state_path.read_text()
        write_script(stack_dir / "components" / "app", "status.sh", 'echo "vpc is $VPC_ID"\n')

        process = executor.invoke(str(elaborate_path), "app", "status", state_paths=[str(state_path)], relay=False)

        assert process.ok
        assert "vpc is vpc-123" in process.stdout
        assert state_path.read_text() == before

    def test_invoke_unknown_component(self, executor, elaborate_path):
        with pytest.raises(ManifestError):
            executor.invoke(str(elaborate_path), "nope", "status", relay=False)

    def test_invoke_nonzero_exit(self, executor, elaborate_path, stack_dir):
        write_script(stack_dir / "components" / "network", "status.sh", "exit 2\n")
        with pytest.raises(ExecutionError, match="exited with code 2"):
            executor.invoke(str(elaborate_path), "network", "status", relay=False)

    def test_elaborate_manifest_loads(self, elaborate_path):
        """Sanity check of the fixture: order is resolved."""
        manifest = load_elaborate_manifest(elaborate_path)
        assert manifest.lifecycle.order == ("network", "app")
