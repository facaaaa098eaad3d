"""
stackctl.schemas - Data structures of the lifecycle engine.

Manifest -> elaborate Manifest -> Request -> StateManifest

Lifecycle:
1. Manifest: Parsed stack (hub.yaml) with components, declared parameters and outputs
2. Elaborate Manifest: Same shape, parameters merged and locked, order resolved
3. Request: One invocation of a verb over the elaborate manifest
4. StateManifest: Durable record of locked parameters, outputs, component steps, operations

Parameter values are a tagged variant (Scalar, SecretRef, LicenseRef, Structured).
"""

from .values import (
    Scalar,
    SecretRef,
    LicenseRef,
    Structured,
    Value,
    value_from_raw,
    value_to_raw,
    value_as_text,
)
from .manifest import (
    Capability,
    Component,
    Lifecycle,
    Manifest,
    OutputDecl,
    ParameterDecl,
    ParameterManifest,
    output_qname,
    parameter_qname,
)
from .request import (
    OsEnvironmentMode,
    Request,
)
from .state import (
    CapturedOutput,
    ComponentStatus,
    DryRunRecord,
    LifecycleOperation,
    LockedParameter,
    Phase,
    RunStatus,
    StackStatus,
    StateManifest,
    StateStep,
    Timestamps,
)

__all__ = [
    # Values
    "Scalar",
    "SecretRef",
    "LicenseRef",
    "Structured",
    "Value",
    "value_from_raw",
    "value_to_raw",
    "value_as_text",
    # Manifest
    "Capability",
    "Component",
    "Lifecycle",
    "Manifest",
    "OutputDecl",
    "ParameterDecl",
    "ParameterManifest",
    "output_qname",
    "parameter_qname",
    # Request
    "OsEnvironmentMode",
    "Request",
    # State
    "CapturedOutput",
    "ComponentStatus",
    "DryRunRecord",
    "LifecycleOperation",
    "LockedParameter",
    "Phase",
    "RunStatus",
    "StackStatus",
    "StateManifest",
    "StateStep",
    "Timestamps",
]
