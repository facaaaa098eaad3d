"""
State schemas - the durable record of a stack instance.

StateManifest is the State Journal document: locked parameters, captured
outputs, per-component StateStep records, provided capabilities, and the
log of lifecycle operations. StateStep and LifecycleOperation records are
mutated only by the Lifecycle Executor and are never deleted; a re-run
supersedes them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .manifest import output_qname, parameter_qname
from .values import Value, value_from_raw, value_to_raw


class ComponentStatus(str, Enum):
    """Status of a component within the lifecycle state machine."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Status of a lifecycle operation."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StackStatus(str, Enum):
    """Aggregate status of the stack instance."""
    UNKNOWN = ""
    DEPLOYED = "deployed"
    UNDEPLOYED = "undeployed"
    INCOMPLETE = "incomplete"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def is_secret_kind(kind: Optional[str]) -> bool:
    return bool(kind) and kind.startswith("secret")


@dataclass(frozen=True)
class LockedParameter:
    """The final value of a parameter for one (name, component) pair."""
    name: str
    component: Optional[str] = None
    value: Optional[Value] = None
    kind: Optional[str] = None
    env: Optional[str] = None

    @property
    def qname(self) -> str:
        return parameter_qname(self.name, self.component)

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.component or "")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.component:
            result["component"] = self.component
        if self.kind:
            result["kind"] = self.kind
        result["value"] = value_to_raw(self.value)
        if self.env:
            result["env"] = self.env
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockedParameter":
        kind = data.get("kind")
        return cls(
            name=str(data["name"]),
            component=data.get("component") or None,
            value=value_from_raw(data.get("value"), kind),
            kind=kind,
            env=data.get("env"),
        )


@dataclass(frozen=True)
class CapturedOutput:
    """A value reported by a component after execution."""
    name: str
    component: Optional[str] = None
    kind: Optional[str] = None
    value: Any = None
    brief: Optional[str] = None

    @property
    def qname(self) -> str:
        return output_qname(self.name, self.component)

    @property
    def is_secret(self) -> bool:
        return is_secret_kind(self.kind)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.component:
            result["component"] = self.component
        if self.kind:
            result["kind"] = self.kind
        result["value"] = self.value
        if self.brief:
            result["brief"] = self.brief
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CapturedOutput":
        return cls(
            name=str(data["name"]),
            component=data.get("component") or None,
            kind=data.get("kind"),
            value=data.get("value"),
            brief=data.get("brief"),
        )


@dataclass
class Timestamps:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.start is not None:
            result["start"] = _iso(self.start)
        if self.end is not None:
            result["end"] = _iso(self.end)
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Timestamps":
        data = data or {}
        return cls(start=_parse_time(data.get("start")), end=_parse_time(data.get("end")))


@dataclass
class DryRunRecord:
    """Non-authoritative result of the last dry run of a component."""
    timestamp: datetime
    status: ComponentStatus
    captured_outputs: list[CapturedOutput] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"timestamp": _iso(self.timestamp), "status": self.status.value}
        if self.captured_outputs:
            result["capturedOutputs"] = [o.to_dict() for o in self.captured_outputs]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DryRunRecord":
        return cls(
            timestamp=_parse_time(data["timestamp"]),
            status=ComponentStatus(data["status"]),
            captured_outputs=[CapturedOutput.from_dict(o) for o in data.get("capturedOutputs") or []],
        )


@dataclass
class StateStep:
    """
    Per-component execution record.

    Attributes:
        status: Lifecycle state of the component
        verb: Last deploy/undeploy verb that ran for the component
        timestamps: Start and end of the last run
        version: Component version tag at the time of the run
        message: Free-form message (error text on failure)
        parameters: Locked component parameters used for the run
        raw_outputs: Raw `key = value` outputs the component printed
        captured_outputs: Requested outputs captured after success
        dry_run: Result of the last dry run, kept apart from real state
    """
    status: ComponentStatus = ComponentStatus.PENDING
    verb: Optional[str] = None
    timestamp: Optional[datetime] = None
    timestamps: Timestamps = field(default_factory=Timestamps)
    version: Optional[str] = None
    message: str = ""
    parameters: list[LockedParameter] = field(default_factory=list)
    raw_outputs: dict[str, str] = field(default_factory=dict)
    captured_outputs: list[CapturedOutput] = field(default_factory=list)
    dry_run: Optional[DryRunRecord] = None

    def is_complete(self, verb: str) -> bool:
        """True when the last `verb` run of this component succeeded."""
        return self.status == ComponentStatus.SUCCESS and self.verb == verb

    @property
    def duration_ms(self) -> Optional[int]:
        if self.timestamps.start and self.timestamps.end:
            delta = self.timestamps.end - self.timestamps.start
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value}
        if self.verb:
            result["verb"] = self.verb
        if self.timestamp is not None:
            result["timestamp"] = _iso(self.timestamp)
        timestamps = self.timestamps.to_dict()
        if timestamps:
            result["timestamps"] = timestamps
        if self.version:
            result["version"] = self.version
        if self.message:
            result["message"] = self.message
        if self.parameters:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        if self.raw_outputs:
            result["rawOutputs"] = [
                {"name": k, "value": v} for k, v in sorted(self.raw_outputs.items())
            ]
        if self.captured_outputs:
            result["capturedOutputs"] = [o.to_dict() for o in self.captured_outputs]
        if self.dry_run is not None:
            result["dryRun"] = self.dry_run.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateStep":
        dry_run = data.get("dryRun")
        return cls(
            status=ComponentStatus(data.get("status") or ComponentStatus.PENDING.value),
            verb=data.get("verb"),
            timestamp=_parse_time(data.get("timestamp")),
            timestamps=Timestamps.from_dict(data.get("timestamps")),
            version=data.get("version"),
            message=data.get("message") or "",
            parameters=[LockedParameter.from_dict(p) for p in data.get("parameters") or []],
            raw_outputs={str(o["name"]): str(o.get("value", "")) for o in data.get("rawOutputs") or []},
            captured_outputs=[CapturedOutput.from_dict(o) for o in data.get("capturedOutputs") or []],
            dry_run=DryRunRecord.from_dict(dry_run) if dry_run else None,
        )


@dataclass
class Phase:
    phase: str
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Phase":
        return cls(phase=str(data["phase"]), status=str(data["status"]))


@dataclass
class LifecycleOperation:
    """
    One invocation of the engine (one deploy/undeploy/backup call).

    Attributes:
        id: Operation id (uuid4)
        operation: The verb
        status: Running until the run finishes
        initiator: User that started the operation
        timestamp: When the operation started
        options: Request options (dry run, offset, limit, ...)
        description: Free-form description
        logs: Log lines attached to the operation
        phases: One phase per component, in execution order
    """
    id: str
    operation: str
    status: RunStatus = RunStatus.RUNNING
    initiator: Optional[str] = None
    timestamp: Optional[datetime] = None
    options: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    logs: str = ""
    phases: list[Phase] = field(default_factory=list)

    def set_phase(self, phase: str, status: str) -> None:
        """Update a phase in place, appending it when new."""
        for existing in self.phases:
            if existing.phase == phase:
                existing.status = status
                return
        self.phases.append(Phase(phase=phase, status=status))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "operation": self.operation,
            "status": self.status.value,
        }
        if self.timestamp is not None:
            result["timestamp"] = _iso(self.timestamp)
        if self.initiator:
            result["initiator"] = self.initiator
        if self.options:
            result["options"] = self.options
        if self.description:
            result["description"] = self.description
        if self.logs:
            result["logs"] = self.logs
        if self.phases:
            result["phases"] = [p.to_dict() for p in self.phases]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LifecycleOperation":
        return cls(
            id=str(data["id"]),
            operation=str(data["operation"]),
            status=RunStatus(data.get("status") or RunStatus.RUNNING.value),
            initiator=data.get("initiator"),
            timestamp=_parse_time(data.get("timestamp")),
            options=dict(data.get("options") or {}),
            description=data.get("description") or "",
            logs=data.get("logs") or "",
            phases=[Phase.from_dict(p) for p in data.get("phases") or []],
        )


@dataclass
class StateManifest:
    """
    The State Journal document.

    Attributes:
        name: Stack name
        status: Aggregate stack status
        message: Free-form message (last error)
        timestamp: Time of the last write
        order: Component order the state was produced with
        stack_parameters: Locked stack parameters
        captured_outputs: Outputs of every successful component
        stack_outputs: Expanded stack-level outputs
        provides: Capability -> components providing it
        components: Component name -> StateStep
        operations: Lifecycle operation log
    """
    name: str = ""
    status: StackStatus = StackStatus.UNKNOWN
    message: str = ""
    timestamp: Optional[datetime] = None
    version: int = 1
    kind: str = "state"
    order: list[str] = field(default_factory=list)
    stack_parameters: list[LockedParameter] = field(default_factory=list)
    captured_outputs: list[CapturedOutput] = field(default_factory=list)
    stack_outputs: list[CapturedOutput] = field(default_factory=list)
    provides: dict[str, list[str]] = field(default_factory=dict)
    components: dict[str, StateStep] = field(default_factory=dict)
    operations: list[LifecycleOperation] = field(default_factory=list)

    def get_step(self, component: str) -> Optional[StateStep]:
        return self.components.get(component)

    def step(self, component: str) -> StateStep:
        """Get the StateStep of a component, creating a pending one."""
        if component not in self.components:
            self.components[component] = StateStep()
        return self.components[component]

    def get_operation(self, operation_id: str) -> Optional[LifecycleOperation]:
        for operation in self.operations:
            if operation.id == operation_id:
                return operation
        return None

    def get_parameter(self, name: str, component: Optional[str] = None) -> Optional[LockedParameter]:
        for parameter in self.stack_parameters:
            if parameter.key == (name, component or ""):
                return parameter
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        result: dict[str, Any] = {
            "version": self.version,
            "kind": self.kind,
        }
        if self.timestamp is not None:
            result["timestamp"] = _iso(self.timestamp)
        result["status"] = self.status.value
        if self.message:
            result["message"] = self.message
        result["meta"] = {"name": self.name}
        result["lifecycle"] = {"order": list(self.order)}
        result["stackParameters"] = [p.to_dict() for p in self.stack_parameters]
        if self.captured_outputs:
            result["capturedOutputs"] = [o.to_dict() for o in self.captured_outputs]
        if self.stack_outputs:
            result["stackOutputs"] = [o.to_dict() for o in self.stack_outputs]
        if self.provides:
            result["provides"] = {k: list(v) for k, v in sorted(self.provides.items())}
        result["components"] = {name: step.to_dict() for name, step in self.components.items()}
        if self.operations:
            result["operations"] = [o.to_dict() for o in self.operations]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateManifest":
        """Deserialize from dictionary."""
        if not isinstance(data, dict):
            raise ValueError("State must be a mapping")
        meta = data.get("meta") or {}
        lifecycle = data.get("lifecycle") or {}
        return cls(
            name=meta.get("name") or "",
            status=StackStatus(data.get("status") or ""),
            message=data.get("message") or "",
            timestamp=_parse_time(data.get("timestamp")),
            version=int(data.get("version", 1)),
            kind=data.get("kind", "state"),
            order=[str(c) for c in lifecycle.get("order") or []],
            stack_parameters=[LockedParameter.from_dict(p) for p in data.get("stackParameters") or []],
            captured_outputs=[CapturedOutput.from_dict(o) for o in data.get("capturedOutputs") or []],
            stack_outputs=[CapturedOutput.from_dict(o) for o in data.get("stackOutputs") or []],
            provides={str(k): [str(c) for c in v or []] for k, v in (data.get("provides") or {}).items()},
            components={
                str(name): StateStep.from_dict(step or {})
                for name, step in (data.get("components") or {}).items()
            },
            operations=[LifecycleOperation.from_dict(o) for o in data.get("operations") or []],
        )
