"""
Parameter Elaborator - merges parameter sources and locks final values.

Merge precedence, lowest to highest:
1. Stack and component declared defaults
2. Parameter files, in command-line order
3. Values locked in a prior state file
4. Explicit -e overrides

Expansion runs in two phases: wildcard (stack-wide) parameters first,
against wildcard values only; then component-qualified parameters,
against the phase-1 values plus qualified values. Secret and license
parameters are references and are never expanded.

Component-declared parameters (a component's inputs) are resolved later,
at execution time, by resolve_component_parameters().
"""

import logging
import os
from dataclasses import replace
from typing import Iterable, Mapping, Optional, Sequence

from stackctl.config import StackctlConfig
from stackctl.diagnostics import WarningCollector
from stackctl.errors import ParameterResolutionError
from stackctl.expressions import Bindings, ExpressionEvaluator, requires_expansion
from stackctl.ordering import order_components, verify_order
from stackctl.schemas import (
    CapturedOutput,
    Component,
    LockedParameter,
    Manifest,
    OutputDecl,
    ParameterDecl,
    ParameterManifest,
    Scalar,
    Value,
    value_as_text,
    value_from_raw,
)
from stackctl.schemas.values import is_empty, is_reference, parameter_kind_is_secret
from stackctl.utils import as_text, looks_like_secret, merge_unique

logger = logging.getLogger("stackctl")

RUNTIME_PREFIX = "hub."


def _coerce(value: Optional[Value], kind: Optional[str]) -> Optional[Value]:
    """A plain string supplied for a secret or license parameter becomes a reference."""
    if isinstance(value, Scalar) and isinstance(value.value, str):
        if parameter_kind_is_secret(kind) or kind == "license":
            return value_from_raw(value.value, kind)
    return value


def _overlay(base: Optional[ParameterDecl], top: ParameterDecl) -> ParameterDecl:
    """Layer a later declaration over an earlier one for the same key."""
    if base is None:
        return replace(top, value=_coerce(top.value, top.kind))
    kind = top.kind or base.kind
    value = top.value if top.value is not None else base.value
    return replace(
        base,
        kind=kind,
        brief=top.brief or base.brief,
        value=_coerce(value, kind),
        default=top.default if top.default is not None else base.default,
        empty=top.empty or base.empty,
        env=top.env or base.env,
        from_env=top.from_env or base.from_env,
    )


def _expandable(value: Optional[Value]) -> bool:
    return isinstance(value, Scalar) and requires_expansion(value.value)


def mark_secret_outputs(outputs: Iterable[OutputDecl]) -> tuple[OutputDecl, ...]:
    """Outputs without a kind whose name looks like a secret become `kind: secret`."""
    return tuple(
        replace(o, kind="secret") if not o.kind and looks_like_secret(o.name) else o
        for o in outputs
    )


def locked_parameters(manifest: Manifest) -> list[LockedParameter]:
    """The locked parameters of an elaborate manifest, as state records."""
    return [
        LockedParameter(name=p.name, component=p.component, value=p.value, kind=p.kind, env=p.env)
        for p in manifest.parameters
    ]


class Elaborator:
    """
    Produces the elaborate manifest of a stack.

    Args:
        config: Engine configuration
        warnings: Collector for non-fatal problems
        evaluator: Expression evaluator (strict unless created with auto_resolve)
        platform_provides: Capabilities satisfied outside the stack
        environ: Process environment read by `fromEnv` parameters
    """

    def __init__(
        self,
        config: StackctlConfig,
        warnings: WarningCollector,
        evaluator: Optional[ExpressionEvaluator] = None,
        platform_provides: Iterable[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.warnings = warnings
        self.evaluator = evaluator or ExpressionEvaluator()
        self.platform_provides = merge_unique(config.platform_provides, platform_provides)
        self.environ = environ if environ is not None else os.environ

    def elaborate(
        self,
        stack: Manifest,
        param_files: Sequence[ParameterManifest] = (),
        state_derived: Sequence[LockedParameter] = (),
        env_overrides: Optional[Mapping[str, str]] = None,
        prior_provides: Iterable[str] = (),
    ) -> Manifest:
        """
        Merge, expand and lock the parameters of a stack.

        Args:
            stack: Parsed stack manifest
            param_files: Parameter files in command-line order
            state_derived: Parameters locked by a prior run of this stack instance
            env_overrides: Explicit `-e` overrides
            prior_provides: Capabilities recorded in the prior state

        Returns:
            Elaborate manifest with locked parameters and resolved order

        Raises:
            ManifestError: If the order cannot be resolved
            ParameterResolutionError: If parameters are missing or cannot be expanded
        """
        order = self.resolve_order(stack, prior_provides)
        merged = self._merge(stack, param_files, state_derived)
        self._apply_environment(merged, env_overrides or {})
        self._fill_missing(merged)
        locked = self._expand(merged)
        parameters = self._elide(locked)

        outputs: dict[str, OutputDecl] = {o.name: o for o in stack.outputs}
        for param_file in param_files:
            outputs.update({o.name: o for o in param_file.outputs})

        components = tuple(
            replace(c, outputs=mark_secret_outputs(c.outputs)) for c in stack.components
        )
        logger.info(
            f"Elaborated stack {stack.name}: {len(components)} component(s), {len(parameters)} parameter(s)",
            extra={"event": "elaborated", "metadata": {"order": order}},
        )
        return replace(
            stack,
            components=components,
            parameters=tuple(sorted(parameters, key=lambda p: p.key)),
            outputs=mark_secret_outputs(outputs.values()),
            lifecycle=replace(stack.lifecycle, order=tuple(order)),
        )

    def resolve_order(self, stack: Manifest, prior_provides: Iterable[str] = ()) -> list[str]:
        """Verify the declared order, or compute one."""
        external = merge_unique(stack.requires, stack.platform_provides, self.platform_provides, prior_provides)
        if stack.lifecycle.order:
            verify_order(stack.lifecycle.order, stack.components, external)
            return list(stack.lifecycle.order)
        return order_components(stack.components, external)

    def _merge(
        self,
        stack: Manifest,
        param_files: Sequence[ParameterManifest],
        state_derived: Sequence[LockedParameter],
    ) -> dict[tuple[str, str], ParameterDecl]:
        merged: dict[tuple[str, str], ParameterDecl] = {}
        for decl in stack.parameters:
            merged[decl.key] = _overlay(merged.get(decl.key), decl)

        for param_file in param_files:
            logger.debug(f"Merging parameters from {param_file.source}")
            for decl in param_file.parameters:
                if not decl.component:
                    for key in [k for k in merged if k[0] == decl.name and k[1]]:
                        merged[key] = _overlay(merged[key], replace(decl, component=key[1]))
                merged[decl.key] = _overlay(merged.get(decl.key), decl)

        for locked in state_derived:
            if locked.name.startswith(RUNTIME_PREFIX) or locked.key not in merged:
                continue
            decl = merged[locked.key]
            merged[locked.key] = decl.with_value(_coerce(locked.value, decl.kind))
        return merged

    def _apply_environment(
        self,
        merged: dict[tuple[str, str], ParameterDecl],
        overrides: Mapping[str, str],
    ) -> None:
        used: set[str] = set()
        for key, decl in merged.items():
            match = next(
                (name for name in (decl.from_env, decl.qname, decl.name) if name and name in overrides),
                None,
            )
            if match is not None:
                used.add(match)
                merged[key] = decl.with_value(value_from_raw(overrides[match], decl.kind))
            elif decl.from_env and is_empty(decl.value) and decl.from_env in self.environ:
                merged[key] = decl.with_value(value_from_raw(self.environ[decl.from_env], decl.kind))

        for name in overrides:
            if name not in used:
                self.warnings.warn(f"Override `{name}` does not match any parameter")

    def _fill_missing(self, merged: dict[tuple[str, str], ParameterDecl]) -> None:
        missing = []
        for key, decl in merged.items():
            if not is_empty(decl.value):
                continue
            if not is_empty(decl.default):
                merged[key] = decl.with_value(_coerce(decl.default, decl.kind))
            elif decl.allows_empty:
                merged[key] = decl.with_value(Scalar(""))
            else:
                hint = f" (env: {decl.from_env})" if decl.from_env else ""
                missing.append(f"{decl.qname}{hint}")
        if missing:
            raise ParameterResolutionError("Parameter(s) without value", missing)

    def _expand(self, merged: dict[tuple[str, str], ParameterDecl]) -> list[ParameterDecl]:
        problems: list[str] = []
        wildcards = [d for d in merged.values() if not d.component]
        qualified = [d for d in merged.values() if d.component]

        # phase 1: stack-wide values see only stack-wide values
        values = {d.name: value_as_text(d.value) for d in wildcards}
        bindings = Bindings(values)
        locked = {}
        for decl in wildcards:
            locked[decl.key] = self._lock(decl, bindings, problems)
            values[decl.name] = value_as_text(locked[decl.key].value)

        # phase 2: qualified values see phase-1 values plus qualified values
        values.update({d.qname: value_as_text(d.value) for d in qualified})
        for decl in qualified:
            locked[decl.key] = self._lock(decl, Bindings(values, component=decl.component), problems)

        if problems:
            raise ParameterResolutionError("Unable to expand parameter(s)", problems)
        return list(locked.values())

    def _lock(self, decl: ParameterDecl, bindings: Bindings, problems: list[str]) -> ParameterDecl:
        locked = replace(decl, default=None, empty=None, from_env=None)
        if is_reference(decl.value) or not _expandable(decl.value):
            return locked
        try:
            return locked.with_value(Scalar(self.evaluator.expand(decl.value.value, bindings)))
        except ParameterResolutionError as e:
            problems.append(f"{decl.qname}: {e}")
            return locked

    def _elide(self, locked: list[ParameterDecl]) -> list[ParameterDecl]:
        wildcard_values = {p.name: p.value for p in locked if not p.component}
        kept = []
        for parameter in locked:
            if parameter.component and parameter.name in wildcard_values:
                if wildcard_values[parameter.name] == parameter.value:
                    logger.debug(f"Eliding {parameter.qname}: same value as wildcard")
                    continue
            kept.append(parameter)
        return kept


def resolve_component_parameters(
    component: Component,
    locked: Sequence[LockedParameter],
    outputs: Sequence[CapturedOutput],
    depends: Sequence[str],
    evaluator: ExpressionEvaluator,
) -> list[LockedParameter]:
    """
    Resolve a component's declared inputs at execution time.

    Lookup goes through Bindings for the component, so a qualified
    parameter wins over outputs of dependencies, which win over wildcards.

    Raises:
        ParameterResolutionError: Listing every input that cannot be resolved
    """
    objects: dict[str, tuple[Optional[Value], Optional[str]]] = {}
    for parameter in locked:
        objects[parameter.qname] = (parameter.value, parameter.kind)
    for output in outputs:
        objects[output.qname] = (Scalar(as_text(output.value)), output.kind)

    values = {key: value_as_text(value) for key, (value, _) in objects.items()}
    bindings = Bindings(values, component=component.name, depends=depends)

    resolved = []
    problems = []
    for decl in component.parameters:
        try:
            value, kind = _resolve_input(decl, objects, bindings, evaluator)
        except ParameterResolutionError as e:
            problems.append(f"{decl.name}: {e}")
            continue
        if value is None:
            problems.append(decl.name)
            continue
        resolved.append(
            LockedParameter(name=decl.name, component=component.name, value=value, kind=kind, env=decl.env)
        )
    if problems:
        raise ParameterResolutionError(f"Unable to resolve parameter(s) of component `{component.name}`", problems)
    return resolved


def _resolve_input(
    decl: ParameterDecl,
    objects: Mapping[str, tuple[Optional[Value], Optional[str]]],
    bindings: Bindings,
    evaluator: ExpressionEvaluator,
) -> tuple[Optional[Value], Optional[str]]:
    key = bindings.locate(decl.name)
    if key is not None:
        value, kind = objects[key]
        kind = decl.kind or kind
        if _expandable(value):
            value = Scalar(evaluator.expand(value.value, bindings))
        return _coerce(value, kind), kind

    for candidate in (decl.value, decl.default):
        if is_empty(candidate):
            continue
        if _expandable(candidate):
            candidate = Scalar(evaluator.expand(candidate.value, bindings))
        return _coerce(candidate, decl.kind), decl.kind

    if decl.allows_empty:
        return Scalar(""), decl.kind
    return None, decl.kind
