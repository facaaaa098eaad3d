"""
State Journal - durable record of a stack instance.

The state is a YAML document (gzip-compressed when the path ends in .gz)
written to one or more destinations. Every write goes to a temp file in
the destination directory and is moved into place with os.replace(), so a
reader never observes a half-written file.

Reads are tolerant: a state that does not exist yet is None. Writes are
not: a checkpoint that cannot be persisted raises StateIOError, because a
resume would otherwise repeat or skip work.
"""

import gzip
import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional, Sequence, Union

import yaml

from stackctl.errors import StateIOError
from stackctl.manifest import dump_yaml
from stackctl.schemas import CapturedOutput, LockedParameter, SecretRef, StateManifest
from stackctl.schemas.values import value_as_text
from stackctl.utils import as_text, format_duration, utcnow

logger = logging.getLogger("stackctl")

PathLike = Union[str, Path]

ExplainFormat = Literal["text", "json", "yaml"]


def _read(path: Path) -> str:
    if path.suffix == ".gz":
        with gzip.open(path, "rt") as f:
            return f.read()
    return path.read_text()


def _write(path: Path, content: str) -> None:
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    data = content.encode()
    if path.suffix == ".gz":
        data = gzip.compress(data)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def load_state(paths: Sequence[PathLike]) -> Optional[StateManifest]:
    """
    Load the state from the first destination that exists.

    Args:
        paths: State destinations in priority order

    Returns:
        The state, or None when no destination exists yet

    Raises:
        StateIOError: If the file exists but cannot be read or parsed
    """
    for path in map(Path, paths):
        if not path.exists():
            continue
        try:
            data = yaml.safe_load(_read(path))
            state = StateManifest.from_dict(data or {})
        except (OSError, EOFError, yaml.YAMLError) as e:
            raise StateIOError(f"Unable to read state {path}: {e}")
        except (KeyError, TypeError, ValueError) as e:
            raise StateIOError(f"Malformed state {path}: {e}")
        logger.debug(f"Loaded state from {path}")
        return state
    return None


def save_state(state: StateManifest, paths: Sequence[PathLike]) -> None:
    """
    Write the state to every destination.

    Every destination is attempted even when an earlier one fails.

    Raises:
        StateIOError: Listing every destination that could not be written
    """
    state.version = 1
    state.kind = "state"
    state.timestamp = utcnow()
    content = dump_yaml(state.to_dict())

    failures = []
    for path in map(Path, paths):
        try:
            _write(path, content)
        except OSError as e:
            failures.append(f"{path}: {e}")
            continue
        logger.debug(f"Wrote state {path}", extra={"event": "state_written", "metadata": {"path": str(path)}})
    if failures:
        raise StateIOError("Unable to write state:\n\t" + "\n\t".join(failures))


class StateJournal:
    """
    The state destinations of one run.

    Args:
        paths: Destinations; the first existing one is read
    """

    def __init__(self, paths: Sequence[PathLike]):
        if not paths:
            raise StateIOError("No state file destination given")
        self.paths = [Path(p) for p in paths]
        self.writes = 0

    def load(self) -> Optional[StateManifest]:
        return load_state(self.paths)

    def checkpoint(self, state: StateManifest) -> None:
        """Persist the state; raises StateIOError when any destination fails."""
        save_state(state, self.paths)
        self.writes += 1


# =============================================================================
# Explain
# =============================================================================


def _parameter_text(parameter: LockedParameter) -> str:
    if isinstance(parameter.value, SecretRef):
        return f"secret:{parameter.value.id}"
    return value_as_text(parameter.value)


def _output_text(output: CapturedOutput) -> str:
    if output.is_secret:
        return "(secret)"
    return as_text(output.value)


def _parameter_lines(parameters: Sequence[LockedParameter], indent: str) -> list[str]:
    lines = []
    for p in sorted(parameters, key=lambda p: p.key):
        env = f" (env:{p.env})" if p.env else ""
        lines.append(f"{indent}{p.qname:>30} => `{_parameter_text(p)}`{env}")
    return lines


def _output_lines(outputs: Sequence[CapturedOutput], indent: str) -> list[str]:
    return [f"{indent}{o.qname:>30} = `{_output_text(o)}`" for o in sorted(outputs, key=lambda o: o.qname)]


def diff_outputs(current: Sequence[CapturedOutput], previous: Sequence[CapturedOutput]) -> list[CapturedOutput]:
    """Outputs that are new or changed relative to the previous component."""
    before = {o.name: o.value for o in previous}
    return [o for o in current if o.name not in before or before[o.name] != o.value]


def _redact_outputs(outputs: Optional[list[dict[str, Any]]]) -> None:
    for output in outputs or []:
        if str(output.get("kind") or "").startswith("secret"):
            output["value"] = "(secret)"


def _redacted(state: StateManifest) -> dict[str, Any]:
    data = state.to_dict()
    _redact_outputs(data.get("capturedOutputs"))
    _redact_outputs(data.get("stackOutputs"))
    for step in (data.get("components") or {}).values():
        _redact_outputs(step.get("capturedOutputs"))
        _redact_outputs((step.get("dryRun") or {}).get("capturedOutputs"))
    return data


def explain_state(state: StateManifest, fmt: ExplainFormat = "text", op_log: bool = False) -> str:
    """
    Render the state for humans or tools without changing it.

    Args:
        state: Loaded state
        fmt: "text", "json" or "yaml"
        op_log: Render the operations log instead of parameters and outputs

    Raises:
        ValueError: If the format is unknown
    """
    if fmt not in ("text", "json", "yaml"):
        raise ValueError(f"Unknown explain format `{fmt}`")

    if op_log:
        operations = [o.to_dict() for o in state.operations]
        if fmt == "json":
            return json.dumps(operations, indent=2, default=str)
        if fmt == "yaml":
            return dump_yaml(operations)
        return _explain_operations(state)

    if fmt == "json":
        return json.dumps(_redacted(state), indent=2, default=str)
    if fmt == "yaml":
        return dump_yaml(_redacted(state))
    return _explain_text(state)


def _explain_text(state: StateManifest) -> str:
    lines = [f"Kind: {state.kind}", f"Name: {state.name}"]
    if state.timestamp:
        lines.append(f"Timestamp: {state.timestamp.isoformat()}")
    lines.append(f"Status: {state.status.value or '(unknown)'}")
    if state.message:
        lines.append(f"Message: {state.message}")

    if state.stack_parameters:
        lines.append("Stack parameters:")
        lines.extend(_parameter_lines(state.stack_parameters, "  "))
    if state.stack_outputs:
        lines.append("Stack outputs:")
        lines.extend(_output_lines(state.stack_outputs, "  "))
    if state.provides:
        lines.append("Provides:")
        for capability, providers in sorted(state.provides.items()):
            lines.append(f"  {capability} => {', '.join(providers)}")

    names = list(state.order) + [n for n in state.components if n not in state.order]
    previous: Sequence[CapturedOutput] = []
    for name in names:
        step = state.get_step(name)
        if step is None:
            continue
        lines.append(f"Component: {name}")
        if step.timestamp:
            lines.append(f"  Timestamp: {step.timestamp.isoformat()}")
        if step.duration_ms is not None:
            lines.append(f"  Duration: {format_duration(step.duration_ms / 1000)}")
        verb = f" ({step.verb})" if step.verb else ""
        lines.append(f"  Status: {step.status.value}{verb}")
        if step.message:
            lines.append(f"  Message: {step.message}")
        if step.parameters:
            lines.append("  Parameters:")
            lines.extend(_parameter_lines(step.parameters, "    "))
        changed = diff_outputs(step.captured_outputs, previous)
        if changed:
            lines.append("  Outputs:")
            lines.extend(_output_lines(changed, "    "))
        if step.dry_run is not None:
            lines.append(f"  Dry run: {step.dry_run.status.value} at {step.dry_run.timestamp.isoformat()}")
        if step.captured_outputs:
            previous = step.captured_outputs
    return "\n".join(lines) + "\n"


def _explain_operations(state: StateManifest) -> str:
    lines = []
    for operation in state.operations:
        started = operation.timestamp.isoformat() if operation.timestamp else ""
        who = f" by {operation.initiator}" if operation.initiator else ""
        lines.append(f"Operation {operation.id}: {operation.operation} {operation.status.value} {started}{who}")
        if operation.options:
            lines.append(f"  Options: {json.dumps(operation.options, sort_keys=True)}")
        for phase in operation.phases:
            lines.append(f"  {phase.phase:>30} {phase.status}")
        if operation.logs:
            lines.append("  Logs:")
            lines.extend(f"    {line}" for line in operation.logs.splitlines())
    if not lines:
        lines.append("No operations recorded")
    return "\n".join(lines) + "\n"
