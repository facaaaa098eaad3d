"""
Manifest loading and writing.

Reads stack manifests (hub.yaml), per-component manifests
(hub-component.yaml inside a component's source directory), parameter
files and elaborate manifests. A stack may extend a parent stack through
`meta.fromStack`. All YAML problems surface as ManifestError.
"""

import logging
import os
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Iterable, Sequence, Union

import yaml

from stackctl.errors import ManifestError
from stackctl.schemas import Component, Manifest, ParameterManifest

logger = logging.getLogger("stackctl")

COMPONENT_MANIFEST = "hub-component.yaml"
STACK_MANIFEST = "hub.yaml"
MAX_STACK_DEPTH = 10


def load_yaml(path: Union[str, Path]) -> Any:
    """
    Load a YAML document.

    Raises:
        ManifestError: If the file is missing or not valid YAML
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}")


def dump_yaml(data: Any) -> str:
    """Stable YAML rendering used for every file stackctl writes."""
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)


def _check_component_names(components: Sequence[Component], source: str) -> None:
    seen: set[str] = set()
    for component in components:
        if component.name in seen:
            raise ManifestError(f"Duplicate component `{component.name}` in {source}")
        seen.add(component.name)


def _merge_component_manifest(component: Component, base_dir: Path) -> Component:
    """Layer the inline declaration over the component's own hub-component.yaml."""
    if not component.source_dir:
        return component
    path = base_dir / component.source_dir / COMPONENT_MANIFEST
    if not path.exists():
        return component
    data = load_yaml(path) or {}
    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a mapping")
    data = dict(data)
    data.setdefault("name", (data.get("meta") or {}).get("name") or component.name)
    try:
        declared = Component.from_dict(data)
    except ValueError as e:
        raise ManifestError(f"Invalid component manifest {path}: {e}")

    logger.debug(f"Merging {path} into component {component.name}")
    return replace(
        component,
        version=component.version or declared.version,
        requires=component.requires or declared.requires,
        provides=component.provides or declared.provides,
        parameters=component.parameters or declared.parameters,
        outputs=component.outputs or declared.outputs,
        verbs=component.verbs or declared.verbs,
    )


def _merge_fields(base, override):
    """Dataclass `override` layered field by field over `base`; None and empty fields inherit."""
    changes = {}
    for f in fields(override):
        value = getattr(override, f.name)
        if value is not None and value != () and value != {}:
            changes[f.name] = value
    return replace(base, **changes)


def _merge_by(items: Iterable, overrides: Iterable, key) -> tuple:
    merged = {key(item): item for item in items}
    for item in overrides:
        k = key(item)
        merged[k] = _merge_fields(merged[k], item) if k in merged else item
    return tuple(merged.values())


def _merge_unique(*lists: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(item for items in lists for item in items))


def merge_order(parent: Sequence[str], child: Sequence[str]) -> tuple[str, ...]:
    """
    Interleave a child lifecycle order into its parent's.

    Child components also present in the parent anchor the merge: parent
    entries up to an anchor come first, then the child entries up to it.

    Raises:
        ManifestError: If the child reorders components of the parent
    """
    anchors = [(ci, parent.index(name)) for ci, name in enumerate(child) if name in parent]
    for (_, previous), (ci, pi) in zip(anchors, anchors[1:]):
        if pi < previous:
            raise ManifestError(
                f"Lifecycle order of `{child[ci]}` conflicts with the parent stack order {list(parent)}")
    order: list[str] = []
    p_next = c_next = 0
    for ci, pi in anchors:
        order.extend(parent[p_next:pi])
        order.extend(child[c_next:ci + 1])
        p_next, c_next = pi + 1, ci + 1
    order.extend(parent[p_next:])
    order.extend(child[c_next:])
    return _merge_unique(order)


def parent_parameter_files(parent_dir: Path, environ=None) -> list[Path]:
    """params.yaml and params-$ENV.yaml of a parent stack, when present."""
    environ = os.environ if environ is None else environ
    names = ["params.yaml"]
    if environ.get("ENV"):
        names.append(f"params-{environ['ENV']}.yaml")
    return [parent_dir / name for name in names if (parent_dir / name).exists()]


def _rebase(component: Component, parent_dir: Path) -> Component:
    return replace(component, source_dir=str((parent_dir / (component.source_dir or component.name)).resolve()))


def _merge_parent(manifest: Manifest, parent: Manifest, parent_dir: Path) -> Manifest:
    """Layer a child stack over its elaborated parent."""
    parameters = parent.parameters
    for params in load_parameter_manifests(parent_parameter_files(parent_dir)):
        parameters = _merge_by(parameters, params.parameters, lambda p: p.key)
    parameters = _merge_by(parameters, manifest.parameters, lambda p: p.key)

    overrides = {c.name: c for c in manifest.components}
    components = tuple(overrides.pop(c.name, None) or _rebase(c, parent_dir) for c in parent.components)
    components += tuple(overrides.values())

    order = manifest.lifecycle.order
    if parent.lifecycle.order or order:
        order = merge_order(parent.lifecycle.order or parent.component_names, order or manifest.component_names)
        order += tuple(name for name in (c.name for c in components) if name not in order)
    lifecycle = replace(
        manifest.lifecycle,
        verbs=_merge_unique(parent.lifecycle.verbs, manifest.lifecycle.verbs),
        order=order,
        optional=_merge_unique(parent.lifecycle.optional, manifest.lifecycle.optional),
    )

    return replace(
        manifest,
        from_stack=None,
        annotations={**parent.annotations, **manifest.annotations},
        components=components,
        requires=_merge_unique(parent.requires, manifest.requires),
        provides=_merge_unique(parent.provides, manifest.provides),
        platform_provides=_merge_unique(parent.platform_provides, manifest.platform_provides),
        lifecycle=lifecycle,
        parameters=parameters,
        outputs=_merge_by(parent.outputs, manifest.outputs, lambda o: o.name),
    )


def load_stack_manifest(path: Union[str, Path], _chain: tuple[Path, ...] = ()) -> Manifest:
    """
    Load a stack manifest and the component manifests it refers to.

    When `meta.fromStack` names a parent stack directory, the parent's
    hub.yaml (with its params.yaml and params-$ENV.yaml) is loaded first
    and the child is layered over it.

    Args:
        path: Path to hub.yaml

    Returns:
        Manifest with components in declaration order

    Raises:
        ManifestError: If the manifest, a component manifest or a parent
            stack is invalid
    """
    path = Path(path)
    data = load_yaml(path)
    base_dir = path.parent
    try:
        manifest = Manifest.from_dict(data, base_dir=str(base_dir))
    except (ValueError, TypeError) as e:
        raise ManifestError(f"Invalid stack manifest {path}: {e}")

    _check_component_names(manifest.components, str(path))
    components = tuple(_merge_component_manifest(c, base_dir) for c in manifest.components)
    manifest = replace(manifest, components=components)
    if not manifest.from_stack:
        return manifest

    chain = _chain + (path.resolve(),)
    parent_path = base_dir / manifest.from_stack
    if parent_path.suffix not in (".yaml", ".yml"):
        parent_path = parent_path / STACK_MANIFEST
    if parent_path.resolve() in chain:
        raise ManifestError(f"Parent stack cycle: {' -> '.join(str(p) for p in chain + (parent_path.resolve(),))}")
    if len(chain) >= MAX_STACK_DEPTH:
        raise ManifestError(f"Parent stacks of {chain[0]} nest deeper than {MAX_STACK_DEPTH}")

    logger.debug(f"Loading parent stack {parent_path} of {path}")
    parent = load_stack_manifest(parent_path, chain)
    return _merge_parent(manifest, parent, parent_path.parent)


def load_elaborate_manifest(path: Union[str, Path]) -> Manifest:
    """Load an elaborate manifest written by `stackctl elaborate`."""
    path = Path(path)
    data = load_yaml(path)
    try:
        manifest = Manifest.from_dict(data, base_dir=str(path.parent))
    except (ValueError, TypeError) as e:
        raise ManifestError(f"Invalid elaborate manifest {path}: {e}")
    _check_component_names(manifest.components, str(path))
    return manifest


def load_parameter_manifests(paths: Iterable[Union[str, Path]]) -> list[ParameterManifest]:
    """Load parameter files in command-line order."""
    manifests = []
    for path in paths:
        data = load_yaml(path)
        try:
            manifests.append(ParameterManifest.from_data(data, source=str(path)))
        except ValueError as e:
            raise ManifestError(f"Invalid parameters file {path}: {e}")
    return manifests


def write_manifest(manifest: Manifest, paths: Iterable[Union[str, Path]]) -> None:
    """
    Write an elaborate manifest to every path.

    Raises:
        ManifestError: If a file cannot be written
    """
    content = dump_yaml(manifest.to_dict())
    for path in paths:
        path = Path(path)
        try:
            if path.parent and not path.parent.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.tmp")
            tmp.write_text(content)
            os.replace(tmp, path)
        except OSError as e:
            raise ManifestError(f"Unable to write {path}: {e}")
        logger.info(f"Wrote {path}", extra={"event": "elaborate_written"})
