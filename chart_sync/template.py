"""Templates for kubernetes manifests.

A template is a manifest body with value references, plus optional guard and
range directives. Template files are YAML, for example:

```yaml
name: ingress
if: .Values.ingress.enabled
body:
  apiVersion: networking.k8s.io/v1
  kind: Ingress
  metadata:
    name: "{{ .Release.Name }}-web"
  spec:
    rules:
    - host: "{{ .Values.ingress.host }}"
```

A string that is exactly one `{{ ... }}` expression is replaced with the
typed value it refers to, so maps and lists can be inserted structurally.
Expressions embedded inside a longer string are formatted as text.

Supported references are `.Values.<path>`, `.Release.Name`,
`.Release.Namespace`, `.Chart.Name`, `.Chart.Version`, `.Chart.AppVersion`
and, inside a `range`, `.Item`, `.Key` and `.Index`. Filters are applied
with `|`: `default <literal>`, `optional`, `quote`, `lower`, `upper` and
`trunc <n>`.
"""

import copy
from dataclasses import dataclass, field, replace
import logging
import re
from typing import Any

import yaml

from .exceptions import InvalidTemplateError, MissingValueError
from .manifest import ReleaseRef
from .values import MISSING, lookup

__all__ = [
    "Guard",
    "Template",
    "RenderContext",
    "parse_templates",
]

_LOGGER = logging.getLogger(__name__)

_EXPRESSION = re.compile(r"\{\{\s*((?:(?!\}\}).)*?)\s*\}\}")
_DIRECTIVE_KEYS = {"name", "if", "unless", "range", "body"}
_ROOTS = {"Values", "Release", "Chart", "Item", "Key", "Index"}


class _Omit:
    """Marker for a value removed by the `optional` filter."""

    def __repr__(self) -> str:
        return "OMIT"


_OMIT: Any = _Omit()


@dataclass(frozen=True)
class Guard:
    """A condition deciding whether a template contributes any documents."""

    expression: str
    """The reference to test, e.g. `.Values.ingress.enabled`."""

    negate: bool = False
    """True for `unless` guards."""


@dataclass(frozen=True)
class Template:
    """A named manifest body with optional guard and range directives."""

    name: str
    """Name of the template, used in error messages and for a stable order."""

    body: list[dict[str, Any]] = field(default_factory=list)
    """Manifest bodies containing value references."""

    guard: Guard | None = None
    """When set and false, the template renders zero documents."""

    range_expr: str | None = None
    """Reference to a list or map; the body is rendered once per element."""

    def expand(self, context: "RenderContext") -> list[dict[str, Any]]:
        """Render the template bodies against the resolved values."""
        if self.guard is not None and not self._guard_passes(context):
            _LOGGER.debug("Template %s skipped by guard %s", self.name, self.guard)
            return []

        results: list[dict[str, Any]] = []
        for item_context in self._range_contexts(context):
            for body in self.body:
                rendered = _substitute(body, item_context, self.name)
                if not isinstance(rendered, dict):
                    raise InvalidTemplateError(
                        self.name, "template body did not render to a mapping"
                    )
                results.append(rendered)
        return results

    def _guard_passes(self, context: "RenderContext") -> bool:
        assert self.guard is not None
        value = _evaluate(self.guard.expression, context, self.name, lenient=True)
        result = _truthy(value)
        return not result if self.guard.negate else result

    def _range_contexts(self, context: "RenderContext") -> list["RenderContext"]:
        if self.range_expr is None:
            return [context]
        source = _evaluate(self.range_expr, context, self.name, lenient=True)
        if source is MISSING or source is None or source is _OMIT:
            return []
        if isinstance(source, list):
            return [
                replace(context, item=item, index=index)
                for index, item in enumerate(source)
            ]
        if isinstance(source, dict):
            return [
                replace(context, item=source[key], key=str(key), index=index)
                for index, key in enumerate(sorted(source, key=str))
            ]
        raise InvalidTemplateError(
            self.name,
            f"range source {self.range_expr} must be a list or map, found {type(source).__name__}",
        )


@dataclass(frozen=True)
class RenderContext:
    """The objects a template expression can refer to."""

    values: dict[str, Any]
    release: ReleaseRef
    chart: dict[str, Any] = field(default_factory=dict)
    item: Any = MISSING
    key: str | None = None
    index: int | None = None

    def root(self) -> dict[str, Any]:
        root: dict[str, Any] = {
            "Values": self.values,
            "Release": {
                "Name": self.release.name,
                "Namespace": self.release.namespace,
            },
            "Chart": self.chart,
        }
        if self.item is not MISSING:
            root["Item"] = self.item
            root["Index"] = self.index
            if self.key is not None:
                root["Key"] = self.key
        return root


def _truthy(value: Any) -> bool:
    """Helm style truthiness: empty values and zero are false."""
    if value is MISSING or value is _OMIT or value is None:
        return False
    if isinstance(value, (dict, list, str)):
        return len(value) > 0
    return bool(value)


def _split_pipeline(expression: str) -> list[str]:
    """Split an expression on `|` characters that are not inside quotes."""
    stages: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for char in expression:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "|":
            stages.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    stages.append("".join(current).strip())
    return stages


def _literal(text: str, template: str) -> Any:
    try:
        return yaml.load(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise InvalidTemplateError(template, f"invalid literal '{text}': {err}") from err


def _resolve(reference: str, context: RenderContext, template: str) -> Any:
    if not reference.startswith("."):
        return _literal(reference, template)
    parts = reference[1:].split(".")
    if parts[0] not in _ROOTS:
        raise InvalidTemplateError(template, f"unknown reference '{reference}'")
    root = context.root()
    if parts[0] not in root:
        raise InvalidTemplateError(
            template, f"reference '{reference}' is only valid inside a range"
        )
    return lookup(root, parts)


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _evaluate(
    expression: str, context: RenderContext, template: str, lenient: bool = False
) -> Any:
    """Evaluate a reference and its filters.

    Returns MISSING only when lenient, otherwise an unresolved reference
    without a default raises MissingValueError.
    """
    stages = _split_pipeline(expression)
    if not stages[0]:
        raise InvalidTemplateError(template, f"empty expression '{expression}'")
    reference = stages[0]
    value = _resolve(reference, context, template)
    for stage in stages[1:]:
        name, _, arg = stage.partition(" ")
        arg = arg.strip()
        if name == "default":
            if not arg:
                raise InvalidTemplateError(template, "default requires a value")
            if value is MISSING or value is None:
                value = _literal(arg, template)
            continue
        if name == "optional":
            if value is MISSING or value is None:
                value = _OMIT
            continue
        if name not in ("quote", "lower", "upper", "trunc"):
            raise InvalidTemplateError(template, f"unknown filter '{name}'")
        if value is _OMIT:
            continue
        if value is MISSING:
            if lenient:
                return MISSING
            raise MissingValueError(reference, template)
        if isinstance(value, (dict, list)):
            raise InvalidTemplateError(
                template, f"filter '{name}' can't be applied to {reference}"
            )
        text = _format(value)
        if name == "quote":
            value = text
        elif name == "lower":
            value = text.lower()
        elif name == "upper":
            value = text.upper()
        else:
            try:
                value = text[: int(arg)]
            except ValueError as err:
                raise InvalidTemplateError(
                    template, f"trunc requires a number: '{arg}'"
                ) from err
    if value is MISSING and not lenient:
        raise MissingValueError(reference, template)
    return value


def _substitute(node: Any, context: RenderContext, template: str) -> Any:
    if isinstance(node, dict):
        result: dict[str, Any] = {}
        for key, value in node.items():
            rendered = _substitute(value, context, template)
            if rendered is not _OMIT:
                result[key] = rendered
        return result
    if isinstance(node, list):
        items = [_substitute(item, context, template) for item in node]
        return [item for item in items if item is not _OMIT]
    if not isinstance(node, str) or "{{" not in node:
        return node

    if match := _EXPRESSION.fullmatch(node.strip()):
        value = _evaluate(match.group(1), context, template)
        return value if value is _OMIT else copy.deepcopy(value)

    def interpolate(match: re.Match[str]) -> str:
        value = _evaluate(match.group(1), context, template)
        if value is _OMIT:
            return ""
        if isinstance(value, (dict, list)):
            raise InvalidTemplateError(
                template,
                f"can't embed structured value {match.group(1)} in '{node}'",
            )
        return _format(value)

    return _EXPRESSION.sub(interpolate, node)


def _parse_guard(name: str, doc: dict[str, Any]) -> Guard | None:
    if "if" in doc and "unless" in doc:
        raise InvalidTemplateError(name, "use only one of 'if' or 'unless'")
    for key, negate in (("if", False), ("unless", True)):
        if key not in doc:
            continue
        expression = doc[key]
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidTemplateError(name, f"'{key}' must be a reference string")
        return Guard(expression=_strip_braces(expression), negate=negate)
    return None


def _strip_braces(expression: str) -> str:
    """Allow directives to be written with or without `{{ }}`."""
    if match := _EXPRESSION.fullmatch(expression.strip()):
        return match.group(1)
    return expression.strip()


def parse_template(name: str, doc: dict[str, Any]) -> Template:
    """Parse a single template document."""
    if not isinstance(doc, dict):
        raise InvalidTemplateError(name, f"expected a mapping, found {type(doc).__name__}")
    if "body" not in doc:
        return Template(name=name, body=[doc])

    if unknown := set(doc) - _DIRECTIVE_KEYS:
        raise InvalidTemplateError(name, f"unknown directives {sorted(unknown)}")
    name = str(doc.get("name") or name)
    body = doc["body"]
    if isinstance(body, dict):
        body = [body]
    if not isinstance(body, list) or not all(isinstance(b, dict) for b in body):
        raise InvalidTemplateError(name, "body must be a mapping or list of mappings")
    range_expr = doc.get("range")
    if range_expr is not None and not isinstance(range_expr, str):
        raise InvalidTemplateError(name, "'range' must be a reference string")
    return Template(
        name=name,
        body=body,
        guard=_parse_guard(name, doc),
        range_expr=_strip_braces(range_expr) if range_expr else None,
    )


def parse_templates(name: str, content: str) -> list[Template]:
    """Parse every template document in a YAML template file."""
    try:
        docs = [
            doc
            for doc in yaml.load_all(content, Loader=yaml.SafeLoader)
            if doc is not None
        ]
    except yaml.YAMLError as err:
        raise InvalidTemplateError(name, f"unable to parse YAML: {err}") from err
    if len(docs) == 1:
        return [parse_template(name, docs[0])]
    return [parse_template(f"{name}#{index}", doc) for index, doc in enumerate(docs)]

