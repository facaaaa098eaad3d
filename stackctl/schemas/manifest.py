"""
Manifest schemas - the in-memory model of a stack.

A Manifest describes a stack (hub.yaml) or, after elaboration, the fully
merged elaborate manifest. Components are owned by the manifest and carry
their capability requirements, declared inputs and outputs, and the
lifecycle verbs they implement.

Qualified names:
- parameter `name` scoped to component `c` is `name|c`
- output `name` captured from component `c` is `c:name`
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .values import Value, value_from_raw, value_to_raw

Capability = str

VERBS = ("deploy", "undeploy")


def parameter_qname(name: str, component: Optional[str] = None) -> str:
    if component:
        return f"{name}|{component}"
    return name


def output_qname(name: str, component: Optional[str] = None) -> str:
    if component:
        return f"{component}:{name}"
    return name


def _str_list(data: Any, what: str) -> tuple[str, ...]:
    if data is None:
        return ()
    if isinstance(data, str):
        return (data,)
    if not isinstance(data, list):
        raise ValueError(f"{what} must be a list, got {type(data).__name__}")
    return tuple(str(item) for item in data)


@dataclass(frozen=True)
class ParameterDecl:
    """
    A parameter declaration or, in an elaborate manifest, a locked value.

    Attributes:
        name: Dotted parameter name
        component: Component qualifier; empty means wildcard
        kind: None (plain), "user", "secret", "secret/<kind>" or "license"
        brief: Short human description
        value: Explicit value (may contain ${...} / #{...} markers)
        default: Value used when nothing else provides one
        empty: "allow" to accept an empty value
        env: Environment variable the value is exported as
        from_env: Name of the override / environment variable providing the value
    """
    name: str
    component: Optional[str] = None
    kind: Optional[str] = None
    brief: Optional[str] = None
    value: Optional[Value] = None
    default: Optional[Value] = None
    empty: Optional[str] = None
    env: Optional[str] = None
    from_env: Optional[str] = None

    @property
    def qname(self) -> str:
        return parameter_qname(self.name, self.component)

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.component or "")

    @property
    def allows_empty(self) -> bool:
        return self.empty == "allow"

    def with_value(self, value: Optional[Value]) -> "ParameterDecl":
        return replace(self, value=value)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        result: dict[str, Any] = {"name": self.name}
        if self.component:
            result["component"] = self.component
        if self.kind:
            result["kind"] = self.kind
        if self.brief:
            result["brief"] = self.brief
        if self.value is not None:
            result["value"] = value_to_raw(self.value)
        if self.default is not None:
            result["default"] = value_to_raw(self.default)
        if self.empty:
            result["empty"] = self.empty
        if self.env:
            result["env"] = self.env
        if self.from_env:
            result["fromEnv"] = self.from_env
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParameterDecl":
        """Deserialize from dictionary."""
        if not isinstance(data, dict) or not data.get("name"):
            raise ValueError(f"Parameter must be a mapping with a name, got {data!r}")
        kind = data.get("kind")
        return cls(
            name=str(data["name"]),
            component=data.get("component") or None,
            kind=kind,
            brief=data.get("brief"),
            value=value_from_raw(data.get("value"), kind),
            default=value_from_raw(data.get("default"), kind),
            empty=data.get("empty"),
            env=data.get("env"),
            from_env=data.get("fromEnv"),
        )


def flatten_parameters(items: Any, prefix: str = "", component: Optional[str] = None) -> list[ParameterDecl]:
    """
    Parse a parameters list, flattening nested `parameters:` into dotted names.

    A nested block without a value of its own only contributes a name prefix;
    the component qualifier is inherited by children.
    """
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"parameters must be a list, got {type(items).__name__}")
    result: list[ParameterDecl] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError(f"Parameter must be a mapping with a name, got {item!r}")
        name = f"{prefix}{item['name']}"
        qualifier = item.get("component") or component
        nested = item.get("parameters")
        if nested:
            result.extend(flatten_parameters(nested, prefix=name + ".", component=qualifier))
            if "value" not in item and "default" not in item:
                continue
        data = {k: v for k, v in item.items() if k != "parameters"}
        data["name"] = name
        if qualifier:
            data["component"] = qualifier
        result.append(ParameterDecl.from_dict(data))
    return result


@dataclass(frozen=True)
class OutputDecl:
    """
    A requested output.

    Attributes:
        name: Output name
        brief: Short human description
        kind: Output kind; "secret" or "secret/<kind>" marks it sensitive
        value: Template expanded against parameters and raw outputs, default ${name}
        from_tf_var: Raw output to capture, with optional `~base64` / `~json` decodings
    """
    name: str
    brief: Optional[str] = None
    kind: Optional[str] = None
    value: Optional[Any] = None
    from_tf_var: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.brief:
            result["brief"] = self.brief
        if self.kind:
            result["kind"] = self.kind
        if self.value is not None:
            result["value"] = self.value
        if self.from_tf_var:
            result["fromTfVar"] = self.from_tf_var
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutputDecl":
        if not isinstance(data, dict) or not data.get("name"):
            raise ValueError(f"Output must be a mapping with a name, got {data!r}")
        return cls(
            name=str(data["name"]),
            brief=data.get("brief"),
            kind=data.get("kind"),
            value=data.get("value"),
            from_tf_var=data.get("fromTfVar"),
        )


@dataclass(frozen=True)
class Component:
    """
    A component declaration.

    Attributes:
        name: Unique component name within the stack
        version: Optional version or origin tag
        source_dir: Directory holding the verb implementations
        requires: Capabilities that must be provided before this component runs
        provides: Capabilities this component provides once deployed
        parameters: Declared inputs, resolved at execution time
        outputs: Requested outputs captured after execution
        verbs: Verbs implemented; empty means any verb is attempted
    """
    name: str
    version: Optional[str] = None
    source_dir: Optional[str] = None
    requires: tuple[Capability, ...] = field(default_factory=tuple)
    provides: tuple[Capability, ...] = field(default_factory=tuple)
    parameters: tuple[ParameterDecl, ...] = field(default_factory=tuple)
    outputs: tuple[OutputDecl, ...] = field(default_factory=tuple)
    verbs: tuple[str, ...] = field(default_factory=tuple)

    @property
    def qualified_name(self) -> str:
        if self.version:
            return f"{self.name}@{self.version}"
        return self.name

    def implements(self, verb: str) -> bool:
        return not self.verbs or verb in self.verbs

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.version:
            result["version"] = self.version
        if self.source_dir:
            result["source"] = {"dir": self.source_dir}
        if self.requires:
            result["requires"] = list(self.requires)
        if self.provides:
            result["provides"] = list(self.provides)
        if self.parameters:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        if self.outputs:
            result["outputs"] = [o.to_dict() for o in self.outputs]
        if self.verbs:
            result["lifecycle"] = {"verbs": list(self.verbs)}
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Component":
        if not isinstance(data, dict) or not data.get("name"):
            raise ValueError(f"Component must be a mapping with a name, got {data!r}")
        name = str(data["name"])
        source = data.get("source") or {}
        lifecycle = data.get("lifecycle") or {}
        return cls(
            name=name,
            version=data.get("version"),
            source_dir=source.get("dir") if isinstance(source, dict) else None,
            requires=_str_list(data.get("requires"), f"component {name} requires"),
            provides=_str_list(data.get("provides"), f"component {name} provides"),
            parameters=tuple(flatten_parameters(data.get("parameters"))),
            outputs=tuple(OutputDecl.from_dict(o) for o in data.get("outputs") or []),
            verbs=_str_list(lifecycle.get("verbs") or data.get("verbs"), f"component {name} verbs"),
        )


@dataclass(frozen=True)
class Lifecycle:
    """Stack lifecycle: supported verbs, execution order, optional components."""
    verbs: tuple[str, ...] = VERBS
    order: tuple[str, ...] = field(default_factory=tuple)
    optional: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"verbs": list(self.verbs)}
        if self.order:
            result["order"] = list(self.order)
        if self.optional:
            result["optional"] = list(self.optional)
        return result

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Lifecycle":
        data = data or {}
        return cls(
            verbs=_str_list(data.get("verbs"), "lifecycle verbs") or VERBS,
            order=_str_list(data.get("order"), "lifecycle order"),
            optional=_str_list(data.get("optional"), "lifecycle optional"),
        )


@dataclass(frozen=True)
class Manifest:
    """
    A stack manifest (hub.yaml) or an elaborate manifest.

    In a stack manifest `parameters` are declarations with defaults; in an
    elaborate manifest they are the locked values.

    Attributes:
        name: Stack name (meta.name)
        kind: "stack" (or "component" for hub-component.yaml)
        version: Manifest format version
        from_stack: Optional parent stack reference
        annotations: Free-form meta annotations
        components: Component declarations in declaration order
        requires: Capabilities the stack as a whole expects from its environment
        provides: Capabilities the stack provides
        platform_provides: Capabilities supplied by the platform
        lifecycle: Verbs, order and optional components
        parameters: Parameter declarations or locked values
        outputs: Stack-level requested outputs
        base_dir: Directory the manifest was loaded from (not serialized)
    """
    name: str
    kind: str = "stack"
    version: int = 1
    from_stack: Optional[str] = None
    annotations: dict[str, str] = field(default_factory=dict)
    components: tuple[Component, ...] = field(default_factory=tuple)
    requires: tuple[Capability, ...] = field(default_factory=tuple)
    provides: tuple[Capability, ...] = field(default_factory=tuple)
    platform_provides: tuple[Capability, ...] = field(default_factory=tuple)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    parameters: tuple[ParameterDecl, ...] = field(default_factory=tuple)
    outputs: tuple[OutputDecl, ...] = field(default_factory=tuple)
    base_dir: str = field(default=".", compare=False)

    def get_component(self, name: str) -> Optional[Component]:
        """Find a component by name or qualified name."""
        for component in self.components:
            if component.name == name or component.qualified_name == name:
                return component
        return None

    @property
    def component_names(self) -> list[str]:
        return [c.name for c in self.components]

    def ordered_components(self) -> list[Component]:
        """Components in lifecycle order (declaration order when none is set)."""
        if not self.lifecycle.order:
            return list(self.components)
        ordered = []
        for name in self.lifecycle.order:
            component = self.get_component(name)
            if component is not None:
                ordered.append(component)
        return ordered

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        meta: dict[str, Any] = {"name": self.name}
        if self.from_stack:
            meta["fromStack"] = self.from_stack
        if self.annotations:
            meta["annotations"] = dict(sorted(self.annotations.items()))
        result: dict[str, Any] = {
            "version": self.version,
            "kind": self.kind,
            "meta": meta,
            "components": [c.to_dict() for c in self.components],
        }
        if self.requires:
            result["requires"] = list(self.requires)
        if self.provides:
            result["provides"] = list(self.provides)
        if self.platform_provides:
            result["platform"] = {"provides": list(self.platform_provides)}
        result["lifecycle"] = self.lifecycle.to_dict()
        if self.parameters:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        if self.outputs:
            result["outputs"] = [o.to_dict() for o in self.outputs]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: str = ".") -> "Manifest":
        """Deserialize from dictionary."""
        if not isinstance(data, dict):
            raise ValueError("Manifest must be a mapping")
        meta = data.get("meta") or {}
        name = meta.get("name")
        if not name:
            raise ValueError("Manifest meta.name is required")
        platform = data.get("platform") or {}
        return cls(
            name=str(name),
            kind=data.get("kind", "stack"),
            version=int(data.get("version", 1)),
            from_stack=meta.get("fromStack"),
            annotations=dict(meta.get("annotations") or {}),
            components=tuple(Component.from_dict(c) for c in data.get("components") or []),
            requires=_str_list(data.get("requires"), "requires"),
            provides=_str_list(data.get("provides"), "provides"),
            platform_provides=_str_list(platform.get("provides"), "platform provides"),
            lifecycle=Lifecycle.from_dict(data.get("lifecycle")),
            parameters=tuple(flatten_parameters(data.get("parameters"))),
            outputs=tuple(OutputDecl.from_dict(o) for o in data.get("outputs") or []),
            base_dir=base_dir,
        )


@dataclass(frozen=True)
class ParameterManifest:
    """A parameters file: overrides layered on top of stack defaults."""
    source: str
    parameters: tuple[ParameterDecl, ...] = field(default_factory=tuple)
    outputs: tuple[OutputDecl, ...] = field(default_factory=tuple)

    @classmethod
    def from_data(cls, data: Any, source: str) -> "ParameterManifest":
        """Accept either a bare list or a mapping with `parameters:` / `outputs:`."""
        if data is None:
            return cls(source=source)
        if isinstance(data, list):
            return cls(source=source, parameters=tuple(flatten_parameters(data)))
        if isinstance(data, dict):
            return cls(
                source=source,
                parameters=tuple(flatten_parameters(data.get("parameters"))),
                outputs=tuple(OutputDecl.from_dict(o) for o in data.get("outputs") or []),
            )
        raise ValueError(f"Parameters file must contain a list or mapping, got {type(data).__name__}")
