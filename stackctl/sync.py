"""
Control-plane sync - state to patch transform and patch sinks.

transform_state_to_patch() is a pure function of the state. The patch is
handed to a PatchSink; the API client that forwards it to the control
plane lives outside this package. Secrets never travel as bare values:
they are `{kind: <k>, <k>: <value or reference>}` objects.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from stackctl.errors import SyncError
from stackctl.journal import diff_outputs
from stackctl.schemas import CapturedOutput, LockedParameter, RunStatus, SecretRef, StateManifest
from stackctl.schemas.values import LicenseRef, is_empty, value_as_text, value_to_raw
from stackctl.utils import as_text, looks_like_secret

logger = logging.getLogger("stackctl")

MESSENGER = "stackctl"


def guess_secret_kind(kind: Optional[str], name: str) -> str:
    """`secret/token` -> `token`; otherwise derived from the name suffix."""
    if kind and "/" in kind:
        declared = kind.split("/", 1)[1]
        if declared:
            return declared
    for suffix, guessed in (("key", "privateKey"), ("cert", "certificate"), ("token", "token"), ("password", "password")):
        if name.endswith("." + suffix) or name.endswith(suffix[0].upper() + suffix[1:]):
            return guessed
    return "text"


@dataclass
class Patch:
    """Stack instance patch sent to the control plane."""
    name: str
    status: str
    components_enabled: list[str] = field(default_factory=list)
    parameters: list[dict[str, Any]] = field(default_factory=list)
    outputs: list[dict[str, Any]] = field(default_factory=list)
    components_status: list[dict[str, Any]] = field(default_factory=list)
    inflight_operations: list[dict[str, Any]] = field(default_factory=list)
    provides: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "componentsEnabled": self.components_enabled,
            "parameters": self.parameters,
            "status": {"status": self.status, "components": self.components_status},
            "inflightOperations": self.inflight_operations,
            "outputs": self.outputs,
            "provides": self.provides,
        }


def _parameters(locked: Sequence[LockedParameter]) -> list[dict[str, Any]]:
    wildcards = {p.name: p.value for p in locked if not p.component}
    result = []
    for p in sorted(locked, key=lambda p: p.key):
        if p.name.startswith("hub.") or is_empty(p.value):
            continue
        if p.component and p.name in wildcards and wildcards[p.name] == p.value:
            continue
        entry: dict[str, Any] = {"name": p.name}
        if p.component:
            entry["component"] = p.component
        if isinstance(p.value, SecretRef):
            entry["kind"] = "secret"
            entry["value"] = {"kind": p.value.kind, p.value.kind: p.value.id}
        elif isinstance(p.value, LicenseRef):
            entry["kind"] = "license"
            entry["value"] = p.value.id
        elif looks_like_secret(p.name):
            secret_kind = guess_secret_kind(p.kind, p.name)
            entry["kind"] = "secret"
            entry["value"] = {"kind": secret_kind, secret_kind: value_as_text(p.value)}
        else:
            entry["value"] = value_to_raw(p.value)
        entry["messenger"] = MESSENGER
        result.append(entry)
    return result


def _stack_outputs(outputs: Sequence[CapturedOutput]) -> list[dict[str, Any]]:
    result = []
    for o in outputs:
        name, component = o.name, None
        if ":" in name:
            component, name = name.split(":", 1)
        entry: dict[str, Any] = {"name": name}
        if component:
            entry["component"] = component
        if o.is_secret or looks_like_secret(name):
            secret_kind = guess_secret_kind(o.kind, name)
            entry["kind"] = "secret"
            entry["value"] = {"kind": secret_kind, secret_kind: as_text(o.value)}
        else:
            entry["value"] = o.value
        if o.brief:
            entry["brief"] = o.brief
        entry["messenger"] = MESSENGER
        result.append(entry)
    return result


def _components(state: StateManifest) -> list[dict[str, Any]]:
    result = []
    previous: list[CapturedOutput] = []
    for name in state.order:
        step = state.get_step(name)
        if step is None:
            continue
        public = [o for o in step.captured_outputs if not o.is_secret]
        entry: dict[str, Any] = {
            "name": name,
            "status": step.status.value,
            "outputs": [
                {"name": o.name, "value": o.value, **({"brief": o.brief} if o.brief else {})}
                for o in diff_outputs(public, previous)
            ],
        }
        if public:
            previous = public
        if step.version:
            entry["version"] = step.version
        if step.message:
            entry["message"] = step.message
        timestamps = step.timestamps.to_dict()
        if timestamps:
            entry["timestamps"] = timestamps
        result.append(entry)
    return result


def transform_state_to_patch(state: StateManifest) -> Patch:
    """Translate a state into the control-plane patch."""
    return Patch(
        name=state.name,
        status=state.status.value,
        components_enabled=list(state.order),
        parameters=_parameters(state.stack_parameters),
        outputs=_stack_outputs(state.stack_outputs),
        components_status=_components(state),
        inflight_operations=[o.to_dict() for o in state.operations if o.status == RunStatus.RUNNING],
        provides={k: list(v) for k, v in sorted(state.provides.items())},
    )


class PatchSink(ABC):
    """Receives patches on their way to the control plane."""

    @abstractmethod
    def send(self, patch: Patch) -> None:
        """
        Raises:
            SyncError: If the patch is rejected
        """
        pass


class DirectoryPatchSink(PatchSink):
    """Writes each patch as a JSON document into an outbox directory."""

    def __init__(self, outbox: Path):
        self.outbox = Path(outbox)

    def path_for(self, patch: Patch) -> Path:
        return self.outbox / f"{patch.name or 'stack'}.patch.json"

    def send(self, patch: Patch) -> None:
        path = self.path_for(patch)
        try:
            self.outbox.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.tmp")
            tmp.write_text(json.dumps(patch.to_dict(), indent=2, default=str))
            os.replace(tmp, path)
        except OSError as e:
            raise SyncError(f"Unable to write patch to {path}: {e}")
        logger.info(f"Wrote control-plane patch {path}", extra={"event": "patch_written"})
