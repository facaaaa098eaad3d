"""
Parameter values - a tagged variant instead of arbitrary YAML data.

Scalar holds a string, number or boolean. SecretRef and LicenseRef hold an
opaque reference to a value kept by the control plane; the plaintext is
never stored in manifests or state. Structured holds a mapping or list.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Scalar:
    value: Union[str, int, float, bool]


@dataclass(frozen=True)
class SecretRef:
    """Reference to a secret; kind is the secret kind (password, token, ...)."""
    id: str
    kind: str = "password"


@dataclass(frozen=True)
class LicenseRef:
    id: str


@dataclass(frozen=True)
class Structured:
    value: Union[dict, list]

    def __hash__(self) -> int:
        return hash(json.dumps(self.value, sort_keys=True, default=str))


Value = Union[Scalar, SecretRef, LicenseRef, Structured]


def parameter_kind_is_secret(kind: Optional[str]) -> bool:
    return bool(kind) and (kind == "secret" or kind.startswith("secret/"))


def secret_kind(kind: Optional[str]) -> str:
    """`secret/token` -> `token`; plain `secret` defaults to `password`."""
    if kind and kind.startswith("secret/"):
        return kind.split("/", 1)[1] or "password"
    return "password"


def value_from_raw(raw: Any, kind: Optional[str] = None) -> Optional[Value]:
    """
    Build a Value from YAML data.

    Args:
        raw: The YAML value (None means "no value")
        kind: Declared parameter kind; "secret", "secret/<kind>" and "license"
              turn a string into a reference id

    Returns:
        The tagged value, or None when raw is None
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        if "secretRef" in raw:
            return SecretRef(id=str(raw["secretRef"]), kind=str(raw.get("kind") or "password"))
        if "licenseRef" in raw:
            return LicenseRef(id=str(raw["licenseRef"]))
        return Structured(value=raw)
    if isinstance(raw, list):
        return Structured(value=raw)
    if parameter_kind_is_secret(kind) and isinstance(raw, str) and raw != "":
        return SecretRef(id=raw, kind=secret_kind(kind))
    if kind == "license" and isinstance(raw, str) and raw != "":
        return LicenseRef(id=raw)
    if isinstance(raw, (str, int, float, bool)):
        return Scalar(value=raw)
    return Scalar(value=str(raw))


def value_to_raw(value: Optional[Value]) -> Any:
    """Inverse of value_from_raw, producing YAML-safe data."""
    if value is None:
        return None
    if isinstance(value, SecretRef):
        return {"secretRef": value.id, "kind": value.kind}
    if isinstance(value, LicenseRef):
        return {"licenseRef": value.id}
    return value.value


def value_as_text(value: Optional[Value]) -> str:
    """
    String form used for expression bindings and process environments.

    References render as their id; structured data renders as JSON.
    """
    if value is None:
        return ""
    if isinstance(value, (SecretRef, LicenseRef)):
        return value.id
    if isinstance(value, Structured):
        return json.dumps(value.value, sort_keys=True)
    if isinstance(value.value, bool):
        return "true" if value.value else "false"
    return str(value.value)


def is_empty(value: Optional[Value]) -> bool:
    return value is None or (isinstance(value, Scalar) and value.value == "")


def is_reference(value: Optional[Value]) -> bool:
    return isinstance(value, (SecretRef, LicenseRef))
