"""
Template expansion for parameter and output values.

A template is plain text with two kinds of markers:

    ${name}     substitute the value bound to `name`
    #{expr}     evaluate `expr` and substitute the result

Both markers go through ExpressionEvaluator.expand(), the single entry
point. Expressions are evaluated in a Jinja2 sandbox with CEL-style
conversion helpers (int, uint, double, string, bool, size) in scope. The
CEL operators Jinja lacks (&&, ||, !, c ? a : b, null) are rewritten by
cel_to_jinja() before compiling:

    #{3 - int({"prime": "7"}[prime])}-${q}   with prime=prime, q=x  =>  -4-x
    #{env == "prod" ? "big" : "small"}     with env=prod          =>  big

Names are resolved through Bindings, which knows how a name is qualified
for the component being expanded:

    name|component    parameter scoped to the component
    dep:name          output captured from a dependency
    name|dep          parameter scoped to a dependency
    name              stack-wide parameter or bare output
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from jinja2 import ChainableUndefined, StrictUndefined, TemplateError, Undefined, UndefinedError, meta
from jinja2.sandbox import SandboxedEnvironment

from stackctl.errors import ParameterResolutionError

logger = logging.getLogger("stackctl")

MARKER_PATTERN = re.compile(r"\$\{[^}]+\}|#\{(?:[^}{]|\{[^}{]+\})*\}")

MAX_EXPANSION_DEPTH = 10


class TemplateToken(str, Enum):
    """Substitution marker kinds."""
    PLAIN = "${"
    EXPRESSION = "#{"


@dataclass(frozen=True)
class Segment:
    """A piece of a template: literal text (token is None) or a marker body."""
    token: Optional[TemplateToken]
    text: str


def tokenize(template: str) -> list[Segment]:
    """Split a template into literal and marker segments."""
    segments: list[Segment] = []
    position = 0
    for match in MARKER_PATTERN.finditer(template):
        if match.start() > position:
            segments.append(Segment(None, template[position:match.start()]))
        marker = match.group(0)
        token = TemplateToken.EXPRESSION if marker.startswith("#") else TemplateToken.PLAIN
        segments.append(Segment(token, marker[2:-1]))
        position = match.end()
    if position < len(template):
        segments.append(Segment(None, template[position:]))
    return segments


def requires_expansion(value: Any) -> bool:
    return isinstance(value, str) and MARKER_PATTERN.search(value) is not None


class Bindings:
    """Names visible to a template, resolved for one component."""

    def __init__(
        self,
        values: Mapping[str, str],
        component: Optional[str] = None,
        depends: Iterable[str] = (),
    ):
        self.values = dict(values)
        self.component = component
        self.depends = tuple(depends)

    def scoped(self, component: Optional[str], depends: Iterable[str] = ()) -> "Bindings":
        """Same values, resolved for another component."""
        return Bindings(self.values, component, depends)

    def locate(self, name: str) -> Optional[str]:
        """The key a name resolves to, in qualification order; None when unknown."""
        candidates = []
        if self.component:
            candidates.append(f"{name}|{self.component}")
        candidates.extend(f"{dependency}:{name}" for dependency in self.depends)
        candidates.extend(f"{name}|{dependency}" for dependency in self.depends)
        candidates.append(name)
        for key in candidates:
            if key in self.values:
                return key
        return None

    def find(self, name: str) -> Optional[str]:
        key = self.locate(name)
        return self.values[key] if key is not None else None

    def bare_names(self) -> set[str]:
        """Names without component qualification."""
        names = set()
        for key in self.values:
            if "|" in key:
                key = key.split("|", 1)[0]
            elif ":" in key:
                key = key.split(":", 1)[1]
            names.add(key)
        return names


class ExpressionCache:
    """Compiled expressions keyed by source; owned by an evaluator."""

    def __init__(self):
        self._entries: dict[tuple[bool, str], tuple[Any, frozenset]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, auto_resolve: bool, expression: str) -> Optional[tuple[Any, frozenset]]:
        entry = self._entries.get((auto_resolve, expression))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, auto_resolve: bool, expression: str, compiled: Any, names: frozenset) -> None:
        self._entries[(auto_resolve, expression)] = (compiled, names)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class Placeholder(ChainableUndefined):
    """Undefined name rendered as `<name>`; attribute access extends the name."""

    __slots__ = ()

    def __getattr__(self, name: str) -> Any:
        if name[:2] == "__":
            raise AttributeError(name)
        return type(self)(name=f"{self._undefined_name}.{name}")

    def __getitem__(self, key: Any) -> Any:
        return type(self)(name=f"{self._undefined_name}.{key}")

    def __str__(self) -> str:
        return f"<{self._undefined_name}>"


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_uint(value: Any) -> int:
    result = _to_int(value)
    if result < 0:
        raise ValueError(f"uint() of negative value {result}")
    return result


def _to_double(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0", ""):
            return False
        raise ValueError(f"bool() of `{value}`")
    return bool(value)


def format_value(value: Any) -> str:
    """Render an expression result the way a CEL value prints."""
    if value is None:
        return ""
    if isinstance(value, Undefined):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _nest(flat: Mapping[str, str]) -> dict[str, Any]:
    """{"kind": "aws", "region.name": "x"} -> {"kind": "aws", "region": {"name": "x"}}."""
    nested: dict[str, Any] = {}
    for name in sorted(flat):
        node = nested
        parts = name.split(".")
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                break
            node = child
        else:
            node.setdefault(parts[-1], flat[name])
    return nested


_CEL_TOKEN = re.compile(
    r"""
    (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<open>[(\[{])
    |(?P<close>[)\]}])
    |(?P<and>&&)
    |(?P<or>\|\|)
    |(?P<not>!(?!=))
    |(?P<qmark>\?)
    |(?P<colon>:)
    |(?P<comma>,)
    |(?P<other>[^"'()\[\]{}&|!?:,]+|.)
    """,
    re.VERBOSE | re.DOTALL,
)

_CEL_OPERATORS = {"and": " and ", "or": " or ", "not": " not "}

_CLOSERS = {"(": ")", "[": "]", "{": "}"}


class _Mark(Enum):
    QMARK = "?"
    COLON = ":"


def _conditional(pieces: list, mapping: bool = False) -> str:
    """Rewrite `c ? a : b` (right associative) as `(a) if (c) else (b)`."""
    if mapping:
        for index, piece in enumerate(pieces):
            if piece is _Mark.QMARK:
                break
            if piece is _Mark.COLON:
                return _conditional(pieces[:index]) + ": " + _conditional(pieces[index + 1:])
    marks = [i for i, piece in enumerate(pieces) if piece is _Mark.QMARK]
    if not marks:
        return "".join(piece.value if isinstance(piece, _Mark) else piece for piece in pieces)
    question = marks[0]
    depth = 0
    for colon in range(question + 1, len(pieces)):
        if pieces[colon] is _Mark.QMARK:
            depth += 1
        elif pieces[colon] is _Mark.COLON:
            if depth == 0:
                break
            depth -= 1
    else:
        raise ValueError("`?` without matching `:`")
    condition = _conditional(pieces[:question])
    then = _conditional(pieces[question + 1:colon])
    otherwise = _conditional(pieces[colon + 1:])
    return f"(({then}) if ({condition}) else ({otherwise}))"


def _group(tokens: list[tuple[str, str]], position: int, opener: str = "") -> tuple[str, int]:
    items: list[list] = [[]]
    while position < len(tokens):
        kind, text = tokens[position]
        position += 1
        if kind == "open":
            inner, position = _group(tokens, position, text)
            items[-1].append(inner)
        elif kind == "close" and opener:
            body = ", ".join(_conditional(item, opener == "{") for item in items)
            return f"{opener}{body}{_CLOSERS[opener]}", position
        elif kind == "comma" and opener:
            items.append([])
        elif kind == "qmark":
            items[-1].append(_Mark.QMARK)
        elif kind == "colon":
            items[-1].append(_Mark.COLON)
        elif kind in _CEL_OPERATORS:
            items[-1].append(_CEL_OPERATORS[kind])
        elif kind == "other":
            items[-1].append(re.sub(r"\bnull\b", "none", text))
        else:
            items[-1].append(text)
    if opener:
        raise ValueError(f"unbalanced `{opener}`")
    return "".join(_conditional(item) for item in items), position


def cel_to_jinja(expression: str) -> str:
    """
    Rewrite the CEL operators Jinja lacks into Jinja expression syntax.

        a && b       a and b
        a || b       a or b
        !a           not a
        c ? a : b    ((a) if (c) else (b))
        null         none

    String literals are left untouched.

    Raises:
        ValueError: On a conditional without `:` or unbalanced brackets
    """
    tokens = [(match.lastgroup, match.group()) for match in _CEL_TOKEN.finditer(expression)]
    text, _ = _group(tokens, 0)
    return text


class ExpressionEvaluator:
    """
    Expands templates against Bindings.

    Args:
        auto_resolve: Debug mode; unknown names expand to `<name>` instead of failing
        cache: Compiled expression cache; a private one is created when omitted
    """

    def __init__(self, auto_resolve: bool = False, cache: Optional[ExpressionCache] = None):
        self.auto_resolve = auto_resolve
        self.cache = cache if cache is not None else ExpressionCache()
        self._env = SandboxedEnvironment(undefined=Placeholder if auto_resolve else StrictUndefined)
        self._env.globals.update(
            int=_to_int,
            uint=_to_uint,
            double=_to_double,
            string=format_value,
            bool=_to_bool,
            size=len,
        )

    def expand(self, template: str, bindings: Bindings, _depth: int = 0) -> str:
        """
        Substitute every marker in a template.

        Values found through ${...} that contain markers themselves are
        expanded recursively.

        Raises:
            ParameterResolutionError: Unknown name, evaluation error, or a substitution loop
        """
        if _depth >= MAX_EXPANSION_DEPTH:
            raise ParameterResolutionError(
                f"Probably loop expanding `{template}`, reached depth {_depth}"
            )
        parts = []
        for segment in tokenize(template):
            if segment.token is None:
                parts.append(segment.text)
                continue
            if segment.token is TemplateToken.PLAIN:
                value = self._lookup(segment.text.strip(), template, bindings)
            else:
                value = format_value(self.evaluate(segment.text, bindings, _depth))
            if requires_expansion(value):
                value = self.expand(value, bindings, _depth + 1)
            logger.debug(f"--- {segment.token.value}{segment.text}}} | {bindings.component or ''} => {value}")
            parts.append(value)
        return "".join(parts)

    def evaluate(self, expression: str, bindings: Bindings, _depth: int = 0) -> Any:
        """
        Evaluate a single expression (the body of a #{...} marker).

        Raises:
            ParameterResolutionError: If the expression cannot be compiled or evaluated
        """
        compiled, names = self._compile(expression)
        context = {}
        for name in names:
            value = self._bind(name, bindings, _depth)
            if value is not None:
                context[name] = value
        try:
            result = compiled(**context)
        except UndefinedError as e:
            raise ParameterResolutionError(f"Expression `{expression}` refers to unknown name: {e.message}")
        except (TemplateError, ArithmeticError, LookupError, TypeError, ValueError) as e:
            raise ParameterResolutionError(f"Unable to evaluate expression `{expression}`: {e}")
        if isinstance(result, Undefined) and not self.auto_resolve:
            raise ParameterResolutionError(f"Expression `{expression}` refers to an unknown name")
        return result

    def _lookup(self, name: str, template: str, bindings: Bindings) -> str:
        value = bindings.find(name)
        if value is None:
            if self.auto_resolve:
                return f"<{name}>"
            raise ParameterResolutionError(f"`{template}` refers to unknown substitution `{name}`")
        return value

    def _bind(self, name: str, bindings: Bindings, depth: int) -> Any:
        """Value of a top-level expression name; dotted names become nested mappings."""
        value = bindings.find(name)
        if value is not None:
            if requires_expansion(value):
                value = self.expand(value, bindings, depth + 1)
            return value
        prefix = name + "."
        flat = {}
        for bare in bindings.bare_names():
            if bare.startswith(prefix):
                found = bindings.find(bare)
                if found is not None:
                    if requires_expansion(found):
                        found = self.expand(found, bindings, depth + 1)
                    flat[bare[len(prefix):]] = found
        return _nest(flat) if flat else None

    def _compile(self, expression: str) -> tuple[Any, frozenset]:
        cached = self.cache.get(self.auto_resolve, expression)
        if cached is not None:
            return cached
        try:
            source = cel_to_jinja(expression)
            compiled = self._env.compile_expression(source, undefined_to_none=False)
            names = meta.find_undeclared_variables(self._env.parse("{{ " + source + " }}"))
        except (TemplateError, ValueError) as e:
            raise ParameterResolutionError(f"Unable to parse expression `{expression}`: {e}")
        names = frozenset(names - set(self._env.globals))
        self.cache.put(self.auto_resolve, expression, compiled, names)
        return compiled, names
