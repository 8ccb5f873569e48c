# ============================================================================
# ORCHESTRATOR ENGINE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Engine components
# PURPOSE: Rule evaluation, template rendering, JSON filtering
# CREATED: 18 OCT 2026
# ============================================================================
"""
Orchestrator Engine Components

- evaluator: rule expressions for guards, extraction and filter sources
- templates: Jinja2 / Mustache text rendering for request pieces
- filter: recursive JSON search for filter steps

All three are pure: they read a context snapshot and never modify it.
"""

from orchestrator.engine.evaluator import (
    RuleEvaluator,
    get_evaluator,
    evaluate,
    evaluate_guard,
)
from orchestrator.engine.templates import (
    TemplateEngine,
    Jinja2Engine,
    MustacheEngine,
    TemplateRenderer,
    get_renderer,
    render,
)
from orchestrator.engine.filter import search_json, filter_result

__all__ = [
    # Evaluator
    "RuleEvaluator",
    "get_evaluator",
    "evaluate",
    "evaluate_guard",
    # Templates
    "TemplateEngine",
    "Jinja2Engine",
    "MustacheEngine",
    "TemplateRenderer",
    "get_renderer",
    "render",
    # Filter
    "search_json",
    "filter_result",
]
