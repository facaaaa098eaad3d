"""
Lifecycle Executor - runs a verb over the components of a stack.

Execution flow:
1. Load the elaborate manifest and the prior state (if any)
2. Select the components to run (components filter, offset, guess, limit)
3. Append a LifecycleOperation and checkpoint the state
4. For each selected component, in order:
   a. Resolve the component's input parameters
   b. Build the child environment and find the verb implementation
   c. Run it, capture raw and declared outputs
   d. Record the step and checkpoint the state
5. Compute the stack status and stack outputs, finish the operation,
   checkpoint, and optionally send the control-plane patch

The state is written when a component starts and after it finishes: a run
interrupted after component k's checkpoint resumes without repeating k. A
checkpoint that cannot be written stops the run (StateIOError).

SIGINT or SIGTERM lets the running component finish and be recorded, then
stops the run before the next one (InterruptedRun). A second signal exits
immediately.

Component states: pending -> running -> success | failed | skipped
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from stackctl.config import StackctlConfig
from stackctl.diagnostics import WarningCollector
from stackctl.elaborate import locked_parameters, resolve_component_parameters
from stackctl.errors import (
    ExecutionError,
    InterruptedRun,
    ManifestError,
    ParameterResolutionError,
    StackError,
    StateIOError,
    SyncError,
)
from stackctl.expressions import ExpressionEvaluator
from stackctl.journal import StateJournal, diff_outputs
from stackctl.manifest import load_elaborate_manifest
from stackctl.osenv import build_environment
from stackctl.outputs import (
    capture_outputs,
    expand_stack_outputs,
    extract_dynamic_provides,
    extract_secrets,
    parse_text_outputs,
)
from stackctl.process import InterruptGuard, ProcessResult, find_implementation, run_verb
from stackctl.schemas import (
    CapturedOutput,
    Component,
    ComponentStatus,
    DryRunRecord,
    LifecycleOperation,
    LockedParameter,
    Manifest,
    Request,
    RunStatus,
    Scalar,
    SecretRef,
    StackStatus,
    StateManifest,
    Timestamps,
)
from stackctl.schemas.values import value_as_text
from stackctl.secrets import SecretResolver, SecretStore, build_secret_store
from stackctl.sync import PatchSink, transform_state_to_patch
from stackctl.utils import merge_unique, print_banner, print_info, random_pad, utcnow

logger = logging.getLogger("stackctl")

STATUS_VERBS = ("deploy", "undeploy")

PLATFORM_PROVIDER = "*platform*"


@dataclass
class ExecutionResult:
    """Result of one lifecycle operation."""
    state: StateManifest
    operation: LifecycleOperation
    success: bool
    error: Optional[StackError] = None
    executed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def operation_id(self) -> str:
        return self.operation.id


@dataclass
class _Run:
    """Mutable context of one execution."""
    request: Request
    manifest: Manifest
    state: StateManifest
    operation: LifecycleOperation
    journal: Optional[StateJournal]
    stack_parameters: list[LockedParameter]
    outputs: dict[str, CapturedOutput]
    full_order: list[str]
    pad: str


def _test_verb(verb: str, dry_run: bool) -> str:
    return f"{verb}-test" if dry_run else verb


def _component_dir(manifest: Manifest, component: Component) -> Path:
    return (Path(manifest.base_dir) / (component.source_dir or component.name)).resolve()


def stack_status(state: StateManifest, components: Sequence[Component]) -> StackStatus:
    """Aggregate status of the stack from its component steps."""
    steps = [state.get_step(c.name) for c in components]
    if steps and all(s is not None and s.is_complete("deploy") for s in steps):
        return StackStatus.DEPLOYED
    if all(s is None or s.status == ComponentStatus.PENDING or s.is_complete("undeploy") for s in steps):
        return StackStatus.UNDEPLOYED
    return StackStatus.INCOMPLETE


def select_components(
    components: Sequence[Component],
    request: Request,
    prior: Optional[StateManifest],
) -> list[Component]:
    """
    The effective sub-sequence of the execution order.

    Raises:
        ManifestError: If the request names a component the stack does not have
    """
    def index(name: str) -> int:
        for i, component in enumerate(components):
            if name in (component.name, component.qualified_name):
                return i
        raise ManifestError(f"Component `{name}` not found in stack")

    if request.components:
        wanted = {components[index(name)].name for name in request.components}
        return [c for c in components if c.name in wanted]

    start = 0
    if request.offset:
        start = index(request.offset)
    elif request.guess_component and prior is not None:
        start = len(components)
        for i, component in enumerate(components):
            step = prior.get_step(component.name)
            if request.is_undeploy:
                done = step is None or step.status == ComponentStatus.PENDING or step.is_complete("undeploy")
            else:
                done = step is not None and step.is_complete(request.verb)
            if not done:
                start = i
                break
        if start < len(components):
            logger.info(f"Guessed start component: {components[start].name}")
        else:
            logger.info(f"Every component already completed `{request.verb}`")

    end = len(components)
    if request.limit:
        end = index(request.limit) + 1
    return list(components[start:end])


class LifecycleExecutor:
    """
    Runs lifecycle verbs over a stack.

    Usage:
        executor = LifecycleExecutor(config, warnings)
        result = executor.execute(Request(verb="deploy", manifest_path="hub.yaml.elaborate",
                                          state_paths=("hub.yaml.state",)))
        if not result.success:
            raise result.error

    Args:
        config: Engine configuration
        warnings: Collector for non-fatal problems
        secret_store: Dereferences secret parameters exported to components
        evaluator: Expression evaluator for component parameters and outputs
        sink: Receives the control-plane patch at the end of a run
        environ: OS environment the child environment is built from
    """

    def __init__(
        self,
        config: StackctlConfig,
        warnings: WarningCollector,
        secret_store: Optional[SecretStore] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        sink: Optional[PatchSink] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.warnings = warnings
        self.secrets = SecretResolver(secret_store or build_secret_store(config), warnings)
        self.evaluator = evaluator or ExpressionEvaluator()
        self.sink = sink
        self.environ = environ if environ is not None else os.environ

    # =========================================================================
    # Run
    # =========================================================================

    def execute(self, request: Request, manifest: Optional[Manifest] = None) -> ExecutionResult:
        """
        Execute a request.

        Failures of components are reported in the result; errors that make
        the run itself impossible propagate.

        Raises:
            ManifestError: If the elaborate manifest cannot be loaded
            StateIOError: If a checkpoint cannot be written
        """
        manifest = manifest or load_elaborate_manifest(request.manifest_path)
        journal = StateJournal(request.state_paths) if request.state_paths else None
        prior = self._load_prior(journal)
        run = self._start(request, manifest, journal, prior)

        components = self._ordered(manifest, run.full_order)
        if request.is_undeploy:
            components.reverse()
        selected = select_components(components, request, prior)

        result = ExecutionResult(state=run.state, operation=run.operation, success=True)
        self._checkpoint(run)

        predecessors = {name: run.full_order[:i] for i, name in enumerate(run.full_order)}
        with InterruptGuard() as guard:
            for position, component in enumerate(selected):
                error = self._run_component(run, component, predecessors.get(component.name, []), result)
                remaining = selected[position + 1:]
                if error is not None and component.name in manifest.lifecycle.optional:
                    self.warnings.warn(f"Optional component `{component.name}` failed: {error}")
                    error = None
                if error is not None:
                    result.success = False
                    result.error = error
                    if request.force:
                        for rest in remaining:
                            self._skip(run, rest, "skipped after failure", result)
                    break
                if guard.interrupted and remaining:
                    result.success = False
                    result.error = InterruptedRun(
                        f"{guard.interrupted} received; stopped after `{component.name}`, "
                        f"{len(remaining)} component(s) not run"
                    )
                    break

            self._finish(run, components, result)
        return result

    def _load_prior(self, journal: Optional[StateJournal]) -> Optional[StateManifest]:
        if journal is None:
            return None
        try:
            return journal.load()
        except StateIOError as e:
            self.warnings.warn(f"{e}; starting with empty state")
            return None

    def _ordered(self, manifest: Manifest, order: Sequence[str]) -> list[Component]:
        components = []
        for name in order:
            component = manifest.get_component(name)
            if component is None:
                raise ManifestError(f"Lifecycle order refers to unknown component `{name}`")
            components.append(component)
        return components

    def _start(
        self,
        request: Request,
        manifest: Manifest,
        journal: Optional[StateJournal],
        prior: Optional[StateManifest],
    ) -> _Run:
        state = prior or StateManifest()
        state.name = manifest.name
        full_order = [manifest.get_component(n).name for n in manifest.lifecycle.order if manifest.get_component(n)]
        if not full_order:
            full_order = manifest.component_names
        state.order = list(full_order)

        deployment_id = None
        if prior is not None:
            locked = prior.get_parameter("hub.deploymentId")
            if locked is not None and locked.value is not None:
                deployment_id = value_as_text(locked.value)
        stack_parameters = locked_parameters(manifest) + [
            LockedParameter(name="hub.deploymentId", value=Scalar(deployment_id or str(uuid.uuid4()))),
            LockedParameter(name="hub.stackName", value=Scalar(manifest.name)),
        ]
        state.stack_parameters = sorted(stack_parameters, key=lambda p: p.key)

        for capability in merge_unique(manifest.platform_provides, self.config.platform_provides):
            providers = state.provides.setdefault(capability, [])
            if PLATFORM_PROVIDER not in providers:
                providers.append(PLATFORM_PROVIDER)

        operation = LifecycleOperation(
            id=str(uuid.uuid4()),
            operation=request.verb,
            status=RunStatus.RUNNING,
            initiator=self.environ.get("USER"),
            timestamp=utcnow(),
            options=request.options(),
        )
        state.operations.append(operation)
        logger.info(
            f"Starting {request.verb} of stack {manifest.name}",
            extra={"event": "operation_started", "metadata": {"id": operation.id, "options": operation.options}},
        )
        return _Run(
            request=request,
            manifest=manifest,
            state=state,
            operation=operation,
            journal=journal,
            stack_parameters=state.stack_parameters,
            outputs={o.qname: o for o in state.captured_outputs},
            full_order=full_order,
            pad=random_pad(),
        )

    def _checkpoint(self, run: _Run) -> None:
        if run.journal is not None:
            run.journal.checkpoint(run.state)

    def _finish(self, run: _Run, components: Sequence[Component], result: ExecutionResult) -> None:
        state = run.state
        request = run.request
        if not request.dry_run:
            state.captured_outputs = sorted(run.outputs.values(), key=lambda o: o.qname)
            if request.verb in STATUS_VERBS:
                state.status = stack_status(state, components)
                if state.status == StackStatus.DEPLOYED:
                    state.stack_outputs = expand_stack_outputs(
                        run.manifest.outputs,
                        run.stack_parameters,
                        state.captured_outputs,
                        run.full_order,
                        self.evaluator,
                        self.warnings,
                    )
                elif request.is_undeploy and state.status == StackStatus.UNDEPLOYED:
                    state.stack_outputs = []
        state.message = str(result.error) if result.error else ""
        run.operation.status = RunStatus.SUCCESS if result.success else RunStatus.FAILED
        self._checkpoint(run)
        logger.info(
            f"Finished {request.verb} of stack {state.name}: {run.operation.status.value}",
            extra={
                "event": "operation_finished",
                "metadata": {"id": run.operation.id, "status": state.status.value, "failed": result.failed},
            },
        )

        if self.sink is not None and not request.dry_run:
            try:
                self.sink.send(transform_state_to_patch(state))
            except SyncError as e:
                self.warnings.warn(f"Unable to sync stack instance: {e}")

    # =========================================================================
    # Component
    # =========================================================================

    def _skip(
        self,
        run: _Run,
        component: Component,
        reason: str,
        result: ExecutionResult,
        mark_step: bool = True,
    ) -> None:
        run.operation.set_phase(component.name, ComponentStatus.SKIPPED.value)
        if mark_step and not run.request.dry_run and run.request.verb in STATUS_VERBS:
            step = run.state.step(component.name)
            step.status = ComponentStatus.SKIPPED
            step.message = reason
        result.skipped.append(component.name)
        logger.info(
            f"Skipping {component.name}: {reason}",
            extra={"component": component.name, "event": "component_skipped"},
        )

    def _run_component(
        self,
        run: _Run,
        component: Component,
        depends: Sequence[str],
        result: ExecutionResult,
    ) -> Optional[StackError]:
        """Run one component; returns the error that failed it, if any."""
        request = run.request
        verb = request.verb
        if not component.implements(verb):
            self._skip(run, component, f"does not implement `{verb}`", result, mark_step=False)
            self._checkpoint(run)
            return None

        try:
            parameters = resolve_component_parameters(
                component, run.stack_parameters, list(run.outputs.values()), depends, self.evaluator
            )
        except ParameterResolutionError as e:
            return self._unresolved(run, component, e, None, result)

        started = utcnow()
        step = run.state.step(component.name)
        track_status = not request.dry_run and verb in STATUS_VERBS
        if track_status:
            step.status = ComponentStatus.RUNNING
            step.timestamps = Timestamps(start=started)
            step.message = ""
        run.operation.set_phase(component.name, ComponentStatus.RUNNING.value)
        self._checkpoint(run)
        if self.config.verbose:
            print_banner(f"{_test_verb(verb, request.dry_run)} {component.name}")
        logger.info(
            f"Running {_test_verb(verb, request.dry_run)} of {component.name}",
            extra={"component": component.name, "event": "component_started"},
        )

        try:
            process, raw, secrets, provides, captured = self._invoke(run, component, parameters)
        except ParameterResolutionError as e:
            return self._unresolved(run, component, e, started, result)
        except ExecutionError as e:
            self._fail(run, component, e, started=started, result=result)
            return e

        self._succeed(run, component, parameters, raw, secrets, provides, captured, started, result)
        return None

    def _unresolved(
        self,
        run: _Run,
        component: Component,
        error: ParameterResolutionError,
        started,
        result: ExecutionResult,
    ) -> Optional[StackError]:
        """Inputs or secrets of a component cannot be resolved; with force it is skipped."""
        if run.request.force:
            self.warnings.warn(str(error))
            self._skip(run, component, str(error), result)
            self._checkpoint(run)
            return None
        self._fail(run, component, error, started=started, result=result)
        return error

    def _invoke(
        self,
        run: _Run,
        component: Component,
        parameters: Sequence[LockedParameter],
    ) -> tuple[ProcessResult, dict[str, str], dict[str, str], list[str], list[CapturedOutput]]:
        request = run.request
        directory = _component_dir(run.manifest, component)
        implementation = find_implementation(component.name, directory, _test_verb(request.verb, request.dry_run))
        env = self.component_environment(run, component, parameters, directory)

        process = run_verb(component.name, implementation, env, relay=request.relay_output)
        if not process.ok:
            raise ExecutionError(
                component.name, f"`{implementation.describe()}` exited with code {process.returncode}"
            )

        raw = parse_text_outputs(process.stdout)
        try:
            secrets = extract_secrets(raw, run.pad)
        except ValueError as e:
            raise ExecutionError(component.name, f"Unable to decode `secrets` output: {e}", cause=e)
        provides = extract_dynamic_provides(raw)
        if self.config.trace and raw:
            logger.debug(f"Raw outputs of {component.name}: {', '.join(sorted(raw))}")

        captured = []
        if request.verb == "deploy":
            captured = capture_outputs(
                component.name,
                component.outputs,
                raw,
                parameters,
                directory,
                self.evaluator,
                secret_names=secrets,
            )
        return process, raw, secrets, provides, captured

    def component_environment(
        self,
        run: _Run,
        component: Component,
        parameters: Sequence[LockedParameter],
        directory: Path,
    ) -> dict[str, str]:
        """Child environment of a component: filtered OS variables, parameters, engine variables."""
        exported: dict[str, str] = {}
        for parameter in self._exported_stack_parameters(run, component) + list(parameters):
            if not parameter.env:
                continue
            if isinstance(parameter.value, SecretRef):
                exported[parameter.env] = self.secrets.resolve(parameter.value, parameter.qname)
            else:
                exported[parameter.env] = value_as_text(parameter.value)

        request = run.request
        engine = {
            "HUB_COMPONENT": component.name,
            "COMPONENT_NAME": component.name,
            "HUB_COMPONENT_DIR": str(directory),
            "HUB_BASE_DIR": str(Path(run.manifest.base_dir).resolve()),
            "HUB_ELABORATE": str(Path(request.manifest_path).resolve()) if request.manifest_path else "",
            "HUB_STATE": ",".join(str(Path(p).resolve()) for p in request.state_paths),
            "HUB_PROVIDES": " ".join(sorted(run.state.provides)),
            "HUB_RANDOM": run.pad,
        }
        if request.dry_run:
            engine["HUB_DRY_RUN"] = "1"
        return build_environment(request.os_environment_mode, exported, engine, self.environ)

    def _exported_stack_parameters(self, run: _Run, component: Component) -> list[LockedParameter]:
        """Stack parameters with `env:` visible to the component; qualified entries win."""
        visible: dict[str, LockedParameter] = {}
        for parameter in run.stack_parameters:
            if not parameter.env or parameter.component not in (None, component.name):
                continue
            if parameter.name in visible and not parameter.component:
                continue
            visible[parameter.name] = parameter
        return list(visible.values())

    def _succeed(
        self,
        run: _Run,
        component: Component,
        parameters: Sequence[LockedParameter],
        raw: dict[str, str],
        secrets: dict[str, str],
        provides: list[str],
        captured: list[CapturedOutput],
        started,
        result: ExecutionResult,
    ) -> None:
        request = run.request
        state = run.state
        step = state.step(component.name)
        finished = utcnow()
        run.operation.set_phase(component.name, ComponentStatus.SUCCESS.value)
        result.executed.append(component.name)

        if request.dry_run:
            step.dry_run = DryRunRecord(timestamp=finished, status=ComponentStatus.SUCCESS, captured_outputs=captured)
            for output in captured:
                run.outputs[output.qname] = output
        elif request.verb in STATUS_VERBS:
            previous = self._previous_outputs(run, component)
            step.status = ComponentStatus.SUCCESS
            step.verb = request.verb
            step.timestamp = finished
            step.timestamps = Timestamps(start=started, end=finished)
            step.version = component.version
            step.parameters = list(parameters)
            step.raw_outputs = {k: v for k, v in raw.items() if k not in secrets}
            for qname in [q for q, o in run.outputs.items() if o.component == component.name]:
                del run.outputs[qname]
            if request.is_undeploy:
                step.captured_outputs = []
                self._erase_provides(state, component.name)
            else:
                step.captured_outputs = captured
                for output in captured:
                    run.outputs[output.qname] = output
                self._add_provides(state, component.name, merge_unique(component.provides, provides))
                changed = diff_outputs(captured, previous)
                if changed and self.config.verbose:
                    print_info(f"Outputs of {component.name}:")
                    for output in changed:
                        print_info(f"  {output.name} = {'(secret)' if output.is_secret else output.value}")
        else:
            step.message = f"{request.verb} succeeded at {finished.isoformat()}"

        logger.info(
            f"Component {component.name} succeeded",
            extra={
                "component": component.name,
                "event": "component_succeeded",
                "metadata": {"outputs": [o.name for o in captured], "provides": provides},
            },
        )
        self._checkpoint(run)

    def _fail(
        self,
        run: _Run,
        component: Component,
        error: StackError,
        started,
        result: ExecutionResult,
    ) -> None:
        request = run.request
        step = run.state.step(component.name)
        finished = utcnow()
        run.operation.set_phase(component.name, ComponentStatus.FAILED.value)
        result.failed.append(component.name)

        if request.dry_run:
            step.dry_run = DryRunRecord(timestamp=finished, status=ComponentStatus.FAILED)
        elif request.verb in STATUS_VERBS:
            step.status = ComponentStatus.FAILED
            step.verb = request.verb
            step.timestamp = finished
            step.timestamps = Timestamps(start=started or finished, end=finished)
            step.message = str(error)
        else:
            step.message = f"{request.verb} failed: {error}"

        logger.error(
            str(error),
            extra={"component": component.name, "event": "component_failed"},
        )
        self._checkpoint(run)

    def _previous_outputs(self, run: _Run, component: Component) -> list[CapturedOutput]:
        order = run.full_order
        if component.name not in order:
            return []
        for name in reversed(order[:order.index(component.name)]):
            step = run.state.get_step(name)
            if step is not None and step.captured_outputs:
                return step.captured_outputs
        return []

    @staticmethod
    def _add_provides(state: StateManifest, component: str, capabilities: Sequence[str]) -> None:
        for capability in capabilities:
            providers = state.provides.setdefault(capability, [])
            if component not in providers:
                providers.append(component)

    @staticmethod
    def _erase_provides(state: StateManifest, component: str) -> None:
        for capability in list(state.provides):
            providers = [p for p in state.provides[capability] if p != component]
            if providers:
                state.provides[capability] = providers
            else:
                del state.provides[capability]

    # =========================================================================
    # Invoke
    # =========================================================================

    def invoke(
        self,
        manifest_path: str,
        component_name: str,
        verb: str,
        state_paths: Sequence[str] = (),
        relay: bool = True,
    ) -> ProcessResult:
        """
        Run one verb of one component with the environment a deploy would give it.

        The state is read for parameters and outputs but never written.

        Raises:
            ManifestError: If the component is unknown
            ParameterResolutionError: If the component's parameters cannot be resolved
            ExecutionError: If the verb is not implemented or exits non-zero
        """
        manifest = load_elaborate_manifest(manifest_path)
        component = manifest.get_component(component_name)
        if component is None:
            raise ManifestError(f"Component `{component_name}` not found in stack")
        request = Request(
            verb=verb,
            manifest_path=manifest_path,
            state_paths=tuple(state_paths),
            relay_output=relay,
            os_environment_mode=self.config.os_environment_mode,
        )
        prior = self._load_prior(StateJournal(state_paths)) if state_paths else None
        run = self._start(request, manifest, None, prior)
        run.state.operations.remove(run.operation)

        order = run.full_order
        depends = order[:order.index(component.name)] if component.name in order else []
        parameters = resolve_component_parameters(
            component, run.stack_parameters, list(run.outputs.values()), depends, self.evaluator
        )
        directory = _component_dir(manifest, component)
        implementation = find_implementation(component.name, directory, verb)
        env = self.component_environment(run, component, parameters, directory)
        process = run_verb(component.name, implementation, env, relay=relay)
        if not process.ok:
            raise ExecutionError(component.name, f"`{implementation.describe()}` exited with code {process.returncode}")
        return process
