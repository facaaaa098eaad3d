"""
Raw output protocol and captured outputs.

A component reports raw outputs on stdout:

    Outputs:
    # comments are ignored
    dns.domain = example.com
    endpoint = https://api.example.com

The chunk starts with `Outputs:` at the beginning of a line and ends at
the first blank line; there may be several chunks. A repeated key
accumulates distinct values joined by `,`.

Two raw outputs are special: `secrets` carries a one-time-pad encoded
chunk of further `key = value` lines (see utils.otp_encode), and
`provides` extends the capabilities the component provides.

Declared outputs are then captured from the raw outputs, either directly
(`fromTfVar: name~base64~json`) or through a template (`value`, default
`${name}`).
"""

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from stackctl.diagnostics import WarningCollector
from stackctl.errors import ExecutionError, ParameterResolutionError
from stackctl.expressions import Bindings, ExpressionEvaluator, requires_expansion
from stackctl.schemas import CapturedOutput, LockedParameter, OutputDecl
from stackctl.schemas.values import value_as_text
from stackctl.utils import as_text, looks_like_secret, otp_decode, strip_color

logger = logging.getLogger("stackctl")

OUTPUTS_MARKER = "Outputs:"
SECRETS_OUTPUT = "secrets"
PROVIDES_OUTPUT = "provides"


def _add(outputs: dict[str, str], key: str, value: str) -> None:
    if key in outputs:
        existing = outputs[key].split(",")
        if value not in existing:
            outputs[key] = outputs[key] + "," + value
    else:
        outputs[key] = value


def parse_kv_lines(lines: Iterable[str], outputs: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Parse `key = value` lines, skipping comments and lines without `=`."""
    outputs = {} if outputs is None else outputs
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            _add(outputs, key, value.strip())
    return outputs


def parse_text_outputs(text: str) -> dict[str, str]:
    """Collect every `Outputs:` chunk of a process output."""
    outputs: dict[str, str] = {}
    chunk: Optional[list[str]] = None
    for line in strip_color(text).splitlines():
        if chunk is None:
            if line.startswith(OUTPUTS_MARKER):
                chunk = []
            continue
        if not line.strip():
            parse_kv_lines(chunk, outputs)
            chunk = None
            continue
        chunk.append(line)
    if chunk:
        parse_kv_lines(chunk, outputs)
    return outputs


def extract_secrets(raw: dict[str, str], pad: str) -> dict[str, str]:
    """
    Decode the `secrets` raw output in place.

    Returns:
        The decoded secret raw outputs (also merged into `raw`)

    Raises:
        ValueError: If the chunk cannot be decoded with the pad
    """
    encoded = raw.pop(SECRETS_OUTPUT, None)
    if not encoded:
        return {}
    decoded = otp_decode(encoded, pad).decode("utf-8", errors="replace")
    secrets = parse_kv_lines(decoded.splitlines())
    raw.update(secrets)
    return secrets


def extract_dynamic_provides(raw: dict[str, str]) -> list[str]:
    """Pop the `provides` raw output: capabilities separated by commas or spaces."""
    value = raw.pop(PROVIDES_OUTPUT, "")
    return [c for c in value.replace(",", " ").split() if c]


def _decode(component: str, output: str, value: Any, encoding: str) -> Any:
    try:
        if encoding == "base64":
            return base64.b64decode(str(value)).decode("utf-8")
        if encoding == "json":
            return json.loads(value)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ExecutionError(component, f"Unable to decode output `{output}` as {encoding}: {e}", cause=e)
    raise ExecutionError(component, f"Output `{output}` uses unknown decoding `{encoding}`")


def _read_file_output(component: str, output: str, value: str, component_dir: Path) -> str:
    path = component_dir / value[len("file://"):]
    try:
        return path.read_text().strip()
    except OSError as e:
        raise ExecutionError(component, f"Unable to read output `{output}` from `{path}`: {e}", cause=e)


def capture_outputs(
    component: str,
    declared: Sequence[OutputDecl],
    raw: dict[str, str],
    parameters: Sequence[LockedParameter],
    component_dir: Path,
    evaluator: ExpressionEvaluator,
    secret_names: Iterable[str] = (),
) -> list[CapturedOutput]:
    """
    Capture a component's declared outputs.

    Args:
        component: Component name
        declared: The component's output declarations
        raw: Raw outputs reported by the process
        parameters: Locked parameters the component ran with
        component_dir: Directory `file://` outputs are relative to
        evaluator: Expands value templates
        secret_names: Raw outputs that arrived through the `secrets` chunk

    Raises:
        ExecutionError: If a declared output cannot be captured
    """
    secret_names = set(secret_names)
    values = {p.qname: value_as_text(p.value) for p in parameters}
    values.update(raw)
    bindings = Bindings(values, component=component)

    captured = []
    for decl in declared:
        source = decl.name
        if decl.from_tf_var:
            source, *encodings = decl.from_tf_var.split("~")
            if source not in raw:
                raise ExecutionError(component, f"Output `{decl.name}` expects raw output `{source}` which was not reported")
            value: Any = raw[source]
            if isinstance(value, str) and value.startswith("file://"):
                value = _read_file_output(component, decl.name, value, component_dir)
            for encoding in encodings:
                value = _decode(component, decl.name, value, encoding)
        else:
            template = decl.value if decl.value is not None else "${" + decl.name + "}"
            value = template
            if requires_expansion(template):
                try:
                    value = evaluator.expand(template, bindings)
                except ParameterResolutionError as e:
                    raise ExecutionError(component, f"Unable to capture output `{decl.name}`: {e}", cause=e)

        kind = decl.kind
        if not kind and (source in secret_names or looks_like_secret(decl.name)):
            kind = "secret"
        captured.append(CapturedOutput(name=decl.name, component=component, kind=kind, value=value, brief=decl.brief))
    return captured


def expand_stack_outputs(
    declared: Sequence[OutputDecl],
    parameters: Sequence[LockedParameter],
    outputs: Sequence[CapturedOutput],
    order: Sequence[str],
    evaluator: ExpressionEvaluator,
    warnings: WarningCollector,
) -> list[CapturedOutput]:
    """Expand stack-level output templates; unresolvable ones are warnings."""
    values = {p.qname: value_as_text(p.value) for p in parameters}
    values.update({o.qname: as_text(o.value) for o in outputs})
    bindings = Bindings(values, depends=list(reversed(order)))

    expanded = []
    for decl in declared:
        template = decl.value if decl.value is not None else "${" + decl.name + "}"
        try:
            value = evaluator.expand(template, bindings) if requires_expansion(template) else template
        except ParameterResolutionError as e:
            warnings.warn(f"Unable to expand stack output `{decl.name}`: {e}")
            continue
        kind = decl.kind
        if not kind and looks_like_secret(decl.name):
            kind = "secret"
        expanded.append(CapturedOutput(name=decl.name, kind=kind, value=value, brief=decl.brief))
    return expanded
