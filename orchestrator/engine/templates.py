# ============================================================================
# TEMPLATE RENDERING ENGINE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Template rendering with Jinja2 and Mustache
# PURPOSE: Render request pieces (method, URL, headers, body) from context
# CREATED: 18 OCT 2026
# ============================================================================
"""
Template Rendering Engine

Renders text templates against a run context snapshot. Two engines are
available, selected by the ``engine`` tag on each request template:

- jinja2:   {{ amount }}, {{ customer.id }}, {{ items | length }}
- mustache: {{amount}}, {{customer.id}}, {{#items}}{{name}}{{/items}}

Both engines follow the same rules:
- Strict (default): any unresolved variable raises
  UnknownTemplateVariableError. There is no partial substitution.
- Non-strict: unresolved variables render as empty string.
- null renders as empty string.
- Output is not HTML-escaped; rendered text goes into URLs, headers and JSON.

Rendering is pure: the context is only read.

Examples:
    request:
      method: POST
      url: "https://billing.example.com/charge/{{ amount }}"
      headers:
        X-Customer: "{{ customer.id }}"
"""

import re
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Union

import chevron
from chevron.tokenizer import tokenize
from jinja2 import (
    BaseLoader,
    ChainableUndefined,
    Environment,
    StrictUndefined,
    TemplateError,
    TemplateSyntaxError,
    UndefinedError,
)

from core.contracts import EngineTag
from core.errors import TemplateEngineError, UnknownTemplateVariableError

logger = logging.getLogger(__name__)


def _finalize(value: Any) -> Any:
    return "" if value is None else value


# ============================================================================
# ENGINE INTERFACE
# ============================================================================

class TemplateEngine(ABC):
    """One template syntax behind the shared render contract."""

    name: str = ""

    @abstractmethod
    def render(self, template: str, context: Dict[str, Any], strict: bool = True) -> str:
        """
        Render a template string.

        Raises:
            UnknownTemplateVariableError: strict and a variable is unresolved
            TemplateEngineError: syntax error or engine failure
        """


# ============================================================================
# JINJA2
# ============================================================================

class Jinja2Engine(TemplateEngine):
    """
    Jinja2 templates.

    Thread-safe, can be reused across multiple renders.
    """

    name = EngineTag.JINJA2.value

    _UNDEFINED_PATTERNS = (
        re.compile(r"'([^']+)' is undefined"),
        re.compile(r"has no attribute '([^']+)'"),
    )

    def __init__(self):
        self._strict_env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            finalize=_finalize,
        )
        self._lenient_env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            # Renders missing names and attribute chains as ""
            undefined=ChainableUndefined,
            keep_trailing_newline=True,
            finalize=_finalize,
        )

    def render(self, template: str, context: Dict[str, Any], strict: bool = True) -> str:
        env = self._strict_env if strict else self._lenient_env
        try:
            return env.from_string(template).render(context)
        except UndefinedError as e:
            raise UnknownTemplateVariableError(self._undefined_name(e), self.name) from e
        except TemplateSyntaxError as e:
            raise TemplateEngineError(f"Invalid jinja2 template (line {e.lineno}): {e.message}") from e
        except (TemplateError, TypeError, ValueError) as e:
            raise TemplateEngineError(f"jinja2 render failed: {e}") from e

    def _undefined_name(self, error: UndefinedError) -> str:
        message = str(error)
        for pattern in self._UNDEFINED_PATTERNS:
            match = pattern.search(message)
            if match:
                return match.group(1)
        return message


# ============================================================================
# MUSTACHE
# ============================================================================

class _Section:
    """Section node in a parsed mustache token tree."""

    def __init__(self, key: str, inverted: bool):
        self.key = key
        self.inverted = inverted
        self.children: List[Union[Tuple[str, str], "_Section"]] = []


class MustacheEngine(TemplateEngine):
    """
    Mustache templates rendered by chevron.

    chevron itself renders missing keys as empty string, so strict mode walks
    the token tree first and resolves every variable and section key against
    the same scope chain chevron would use.
    """

    name = EngineTag.MUSTACHE.value

    _MISSING = object()

    def render(self, template: str, context: Dict[str, Any], strict: bool = True) -> str:
        tokens = self._tokenize(template)
        if strict:
            self._check(self._build_tree(tokens), [context])

        # Variables render unescaped, same as {{{name}}}
        tokens = [
            ("no escape", key) if tag == "variable" else (tag, key)
            for tag, key in tokens
        ]
        try:
            output = chevron.render(tokens, context)
        except (chevron.ChevronError, TypeError, ValueError, KeyError) as e:
            raise TemplateEngineError(f"mustache render failed: {e}") from e
        return output

    def _tokenize(self, template: str) -> List[Tuple[str, str]]:
        try:
            tokens = list(tokenize(template))
        except chevron.ChevronError as e:
            raise TemplateEngineError(f"Invalid mustache template: {e}") from e
        for tag, key in tokens:
            if tag == "partial":
                raise TemplateEngineError(f"Mustache partials are not supported: {key}")
        return tokens

    def _build_tree(self, tokens: List[Tuple[str, str]]) -> List[Any]:
        root: List[Any] = []
        stack: List[_Section] = []
        current = root
        for tag, key in tokens:
            if tag in ("section", "inverted section"):
                section = _Section(key, inverted=(tag == "inverted section"))
                current.append(section)
                stack.append(section)
                current = section.children
            elif tag == "end":
                stack.pop()
                current = stack[-1].children if stack else root
            elif tag in ("variable", "no escape"):
                current.append((tag, key))
        return root

    def _check(self, nodes: List[Any], scopes: List[Any]) -> None:
        for node in nodes:
            if isinstance(node, _Section):
                value = self._resolve(node.key, scopes)
                if node.inverted:
                    if value is self._MISSING or not value:
                        self._check(node.children, scopes)
                    continue
                if value is self._MISSING:
                    raise UnknownTemplateVariableError(node.key, self.name)
                if not value:
                    continue
                if isinstance(value, list):
                    for item in value:
                        self._check(node.children, [item] + scopes)
                else:
                    self._check(node.children, [value] + scopes)
            else:
                _, key = node
                if self._resolve(key, scopes) is self._MISSING:
                    raise UnknownTemplateVariableError(key, self.name)

    def _resolve(self, key: str, scopes: List[Any]) -> Any:
        """Innermost scope first, dotted names walked per scope."""
        if key == ".":
            return scopes[0]
        for scope in scopes:
            value = scope
            found = True
            for part in key.split("."):
                if isinstance(value, dict) and part in value:
                    value = value[part]
                elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                    value = value[int(part)]
                else:
                    found = False
                    break
            if found:
                return value
        return self._MISSING


# ============================================================================
# RENDERER
# ============================================================================

class TemplateRenderer:
    """
    Engine registry and render entry point.

    Usage:
        renderer = TemplateRenderer()
        renderer.render("/charge/{{ amount }}", {"amount": 150})  # "/charge/150"
    """

    def __init__(self):
        self._engines: Dict[str, TemplateEngine] = {}
        self.register_engine(Jinja2Engine())
        self.register_engine(MustacheEngine())

    def register_engine(self, engine: TemplateEngine) -> None:
        self._engines[engine.name] = engine

    def get_engine(self, engine: Union[str, EngineTag]) -> TemplateEngine:
        tag = engine.value if isinstance(engine, EngineTag) else str(engine)
        if tag not in self._engines:
            raise TemplateEngineError(f"Unknown template engine: {tag}")
        return self._engines[tag]

    def render(
        self,
        template: str,
        context: Dict[str, Any],
        engine: Union[str, EngineTag] = EngineTag.JINJA2,
        strict: bool = True,
    ) -> str:
        """
        Render one template string.

        Args:
            template: Template text
            context: Variable bindings (not modified)
            engine: Engine tag
            strict: Fail on unresolved variables (False renders them as "")

        Returns:
            Rendered text

        Raises:
            UnknownTemplateVariableError: strict and a variable is unresolved
            TemplateEngineError: unknown engine, syntax error, engine failure
        """
        return self.get_engine(engine).render(template, context, strict=strict)

    def render_value(
        self,
        value: Any,
        context: Dict[str, Any],
        engine: Union[str, EngineTag] = EngineTag.JINJA2,
        strict: bool = True,
    ) -> Any:
        """Recursively render string leaves of dicts and lists."""
        if isinstance(value, str):
            return self.render(value, context, engine=engine, strict=strict)
        elif isinstance(value, dict):
            return {
                k: self.render_value(v, context, engine=engine, strict=strict)
                for k, v in value.items()
            }
        elif isinstance(value, list):
            return [self.render_value(item, context, engine=engine, strict=strict) for item in value]
        else:
            return value


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

_renderer: Optional[TemplateRenderer] = None


def get_renderer() -> TemplateRenderer:
    """Get shared template renderer instance."""
    global _renderer
    if _renderer is None:
        _renderer = TemplateRenderer()
    return _renderer


def render(
    template: str,
    context: Dict[str, Any],
    engine: Union[str, EngineTag] = EngineTag.JINJA2,
    strict: bool = True,
) -> str:
    """Convenience function to render one template."""
    return get_renderer().render(template, context, engine=engine, strict=strict)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "TemplateEngine",
    "Jinja2Engine",
    "MustacheEngine",
    "TemplateRenderer",
    "get_renderer",
    "render",
]
