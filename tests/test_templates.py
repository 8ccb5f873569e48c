# ============================================================================
# TEMPLATE RENDERER TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - Jinja2 and Mustache rendering
# PURPOSE: Verify strict/lenient resolution, null handling, engine selection
# CREATED: 18 OCT 2026
# ============================================================================
"""
Template Renderer Tests

Covers:
1. Jinja2 strict and non-strict rendering
2. Mustache strict and non-strict rendering, sections
3. Unescaped output for both engines
4. Unknown engine and syntax errors
5. Recursive render_value, block-only templates

Run with:
    pytest tests/test_templates.py -v
"""

import copy
import pytest

from core.contracts import EngineTag
from core.errors import RenderError, TemplateEngineError, UnknownTemplateVariableError
from orchestrator.engine.templates import TemplateRenderer, render


@pytest.fixture
def renderer():
    return TemplateRenderer()


@pytest.fixture
def context():
    return {
        "amount": 150,
        "customer": {"id": "c-42", "name": "Ada & Co"},
        "items": [{"name": "a"}, {"name": "b"}],
        "note": None,
    }


# ============================================================================
# JINJA2
# ============================================================================

class TestJinja2:
    """Tests for the jinja2 engine."""

    def test_basic_substitution(self, renderer, context):
        assert renderer.render("/charge/{{ amount }}", context) == "/charge/150"
        assert renderer.render("{{ customer.id }}", context) == "c-42"

    def test_filters_available(self, renderer, context):
        assert renderer.render("{{ items | length }}", context) == "2"

    def test_strict_missing_name(self, renderer, context):
        with pytest.raises(UnknownTemplateVariableError) as exc:
            renderer.render("/charge/{{ total }}", context)
        assert exc.value.name == "total"
        assert exc.value.engine == "jinja2"

    def test_strict_missing_attribute(self, renderer, context):
        with pytest.raises(UnknownTemplateVariableError) as exc:
            renderer.render("{{ customer.email }}", context)
        assert exc.value.name == "email"

    def test_lenient_missing_renders_empty(self, renderer, context):
        assert renderer.render("[{{ total }}]", context, strict=False) == "[]"
        assert renderer.render("[{{ customer.address.city }}]", context, strict=False) == "[]"

    def test_null_renders_empty(self, renderer, context):
        assert renderer.render("[{{ note }}]", context) == "[]"

    def test_not_html_escaped(self, renderer, context):
        assert renderer.render("{{ customer.name }}", context) == "Ada & Co"

    def test_syntax_error(self, renderer, context):
        with pytest.raises(TemplateEngineError):
            renderer.render("{{ amount ", context)

    def test_render_errors_share_base(self, renderer, context):
        with pytest.raises(RenderError):
            renderer.render("{{ nope }}", context)


# ============================================================================
# MUSTACHE
# ============================================================================

class TestMustache:
    """Tests for the mustache engine."""

    def test_basic_substitution(self, renderer, context):
        result = renderer.render("/charge/{{amount}}/{{customer.id}}", context, engine="mustache")
        assert result == "/charge/150/c-42"

    def test_list_section(self, renderer, context):
        result = renderer.render("{{#items}}{{name}},{{/items}}", context, engine=EngineTag.MUSTACHE)
        assert result == "a,b,"

    def test_inverted_section_on_missing_key(self, renderer, context):
        result = renderer.render("{{^flag}}none{{/flag}}", context, engine="mustache")
        assert result == "none"

    def test_strict_missing_variable(self, renderer, context):
        with pytest.raises(UnknownTemplateVariableError) as exc:
            renderer.render("{{total}}", context, engine="mustache")
        assert exc.value.name == "total"
        assert exc.value.engine == "mustache"

    def test_strict_missing_inside_section(self, renderer, context):
        with pytest.raises(UnknownTemplateVariableError) as exc:
            renderer.render("{{#items}}{{sku}}{{/items}}", context, engine="mustache")
        assert exc.value.name == "sku"

    def test_section_sees_outer_scope(self, renderer, context):
        result = renderer.render("{{#items}}{{amount}}{{/items}}", context, engine="mustache")
        assert result == "150150"

    def test_lenient_missing_renders_empty(self, renderer, context):
        assert renderer.render("[{{total}}]", context, engine="mustache", strict=False) == "[]"

    def test_null_renders_empty(self, renderer, context):
        assert renderer.render("[{{note}}]", context, engine="mustache") == "[]"

    def test_not_html_escaped(self, renderer, context):
        assert renderer.render("{{customer.name}}", context, engine="mustache") == "Ada & Co"

    def test_partials_rejected(self, renderer, context):
        with pytest.raises(TemplateEngineError):
            renderer.render("{{> header}}", context, engine="mustache")

    def test_unclosed_section(self, renderer, context):
        with pytest.raises(TemplateEngineError):
            renderer.render("{{#items}}{{name}}", context, engine="mustache")


# ============================================================================
# RENDERER
# ============================================================================

class TestRenderer:
    """Tests for engine selection and recursive rendering."""

    def test_unknown_engine(self, renderer, context):
        with pytest.raises(TemplateEngineError):
            renderer.render("{{ amount }}", context, engine="handlebars")

    def test_unknown_engine_rejected_without_templates(self, renderer, context):
        with pytest.raises(TemplateEngineError):
            renderer.render("plain text", context, engine="handlebars")

    def test_plain_text_passthrough(self, renderer, context):
        assert renderer.render("https://example.com/x", context) == "https://example.com/x"
        assert renderer.render("https://example.com/x", context, engine="mustache") == "https://example.com/x"

    def test_block_only_template_rendered(self, renderer, context):
        template = "{% if amount > 100 %}big{% else %}small{% endif %}"
        assert renderer.render(template, context) == "big"

    def test_comment_only_template_rendered(self, renderer, context):
        assert renderer.render("charge{# internal #}", context) == "charge"

    def test_block_only_body_leaf_rendered(self, renderer, context):
        body = {"size": "{% if amount > 100 %}large{% endif %}"}
        assert renderer.render_value(body, context) == {"size": "large"}

    def test_render_value_recursive(self, renderer, context):
        body = {
            "amount": "{{ amount }}",
            "lines": ["{{ customer.id }}", 7],
            "flag": True,
        }
        before = copy.deepcopy(context)

        result = renderer.render_value(body, context)

        assert result == {"amount": "150", "lines": ["c-42", 7], "flag": True}
        assert body["amount"] == "{{ amount }}"
        assert context == before

    def test_module_render(self, context):
        assert render("{{ amount }}", context) == "150"
