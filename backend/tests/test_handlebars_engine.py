"""
Handlebars evaluator tests: paths, block helpers, else-chains, iteration data
variables, the fixed helper library, whitespace handling and parse errors.
"""
import pytest
import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


class TestPaths:
    """Mustache lookups against the root context and block scopes."""

    def test_simple_and_nested_paths(self):
        from services.handlebars_engine import evaluate

        values = {"clientName": "Acme Ltd", "client": {"address": {"city": "Leeds"}}}
        assert evaluate("Dear {{clientName}} of {{client.address.city}}", values) == "Dear Acme Ltd of Leeds"

    def test_missing_values_render_empty(self):
        from services.handlebars_engine import evaluate

        assert evaluate("[{{missing}}][{{client.name}}]", {}) == "[][]"

    def test_output_is_not_escaped_by_default(self):
        from services.handlebars_engine import evaluate, compile_template

        values = {"name": "Smith & Sons <Ltd>"}
        assert evaluate("{{name}}", values) == "Smith & Sons <Ltd>"
        escaped = compile_template("{{name}}|{{{name}}}", escape_html=True).render(values)
        assert escaped == "Smith &amp; Sons &lt;Ltd&gt;|Smith & Sons <Ltd>"

    def test_scalars_stringify(self):
        from services.handlebars_engine import evaluate

        assert evaluate("{{flag}} {{count}} {{rate}}", {"flag": False, "count": 3, "rate": 2.5}) == "false 3 2.5"


class TestBlocks:
    """#if, #unless, #each and #with."""

    def test_if_else(self):
        from services.handlebars_engine import evaluate

        template = "{{#if isVatRegistered}}VAT applies{{else}}No VAT{{/if}}"
        assert evaluate(template, {"isVatRegistered": True}) == "VAT applies"
        assert evaluate(template, {"isVatRegistered": False}) == "No VAT"
        assert evaluate(template, {"isVatRegistered": []}) == "No VAT"

    def test_else_if_chain(self):
        from services.handlebars_engine import evaluate

        template = "{{#if a}}A{{else if b}}B{{else}}C{{/if}}"
        assert evaluate(template, {"a": 1, "b": 1}) == "A"
        assert evaluate(template, {"a": 0, "b": 1}) == "B"
        assert evaluate(template, {}) == "C"

    def test_unless(self):
        from services.handlebars_engine import evaluate

        assert evaluate("{{#unless paid}}Payment outstanding{{/unless}}", {"paid": False}) == "Payment outstanding"
        assert evaluate("{{#unless paid}}Payment outstanding{{/unless}}", {"paid": True}) == ""

    def test_each_with_data_variables(self):
        from services.handlebars_engine import evaluate

        template = "{{#each items}}{{@index}}:{{this}}{{#if @last}}.{{else}}, {{/if}}{{/each}}"
        assert evaluate(template, {"items": ["VAT", "Payroll", "Accounts"]}) == "0:VAT, 1:Payroll, 2:Accounts."

    def test_each_over_objects_with_parent_lookup(self):
        from services.handlebars_engine import evaluate

        template = "{{#each directors}}{{name}} of {{../companyName}};{{/each}}"
        values = {"companyName": "Acme", "directors": [{"name": "Ann"}, {"name": "Bob"}]}
        assert evaluate(template, values) == "Ann of Acme;Bob of Acme;"

    def test_each_else_on_empty(self):
        from services.handlebars_engine import evaluate

        assert evaluate("{{#each items}}x{{else}}none{{/each}}", {"items": []}) == "none"

    def test_each_over_mapping_exposes_key(self):
        from services.handlebars_engine import evaluate

        assert evaluate("{{#each fees}}{{@key}}={{this}} {{/each}}", {"fees": {"vat": 100, "payroll": 50}}) == (
            "vat=100 payroll=50 "
        )

    def test_with_and_root(self):
        from services.handlebars_engine import evaluate

        template = "{{#with client}}{{name}} ({{@root.ref}}){{/with}}"
        assert evaluate(template, {"client": {"name": "Acme"}, "ref": "ACM001"}) == "Acme (ACM001)"

    def test_standalone_block_lines_are_removed(self):
        from services.handlebars_engine import evaluate

        template = "Services:\n{{#each items}}\n- {{name}}\n{{/each}}\nThanks"
        values = {"items": [{"name": "VAT"}, {"name": "Payroll"}]}
        assert evaluate(template, values) == "Services:\n- VAT\n- Payroll\nThanks"

    def test_comments_and_whitespace_control(self):
        from services.handlebars_engine import evaluate

        assert evaluate("a{{! internal }}b", {}) == "ab"
        assert evaluate("a{{!-- note --}}b", {}) == "ab"
        assert evaluate("a   {{~name~}}   b", {"name": "X"}) == "aXb"


class TestHelpers:
    """The fixed helper library."""

    def test_format_date_and_currency(self):
        from services.handlebars_engine import evaluate

        values = {"dueDate": "2024-01-31", "fee": 1500}
        assert evaluate('{{formatDate dueDate "DD MMMM YYYY"}}', values) == "31 January 2024"
        assert evaluate("{{formatDate dueDate}}", values) == "31/01/2024"
        assert evaluate("{{formatDate missing}}", values) == ""
        assert evaluate("{{currency fee}} {{formatCurrency fee}}", values) == "£1,500 £1,500"

    def test_comparison_subexpressions(self):
        from services.handlebars_engine import evaluate

        template = '{{#if (eq status "ACTIVE")}}on{{else}}off{{/if}}'
        assert evaluate(template, {"status": "ACTIVE"}) == "on"
        assert evaluate(template, {"status": "CEASED"}) == "off"
        assert evaluate("{{#if (and (gt fee 100) (not waived))}}charge{{/if}}", {"fee": 150, "waived": False}) == "charge"
        assert evaluate("{{#if (lt a b)}}x{{else}}y{{/if}}", {"a": "1", "b": 2}) == "y"

    def test_annual_total(self):
        from services.handlebars_engine import evaluate

        services = [{"fee": "1,200"}, {"annualized": 300}, {"fee": "£50"}, "ignored"]
        assert evaluate("{{calculateAnnualTotal services}}", {"services": services}) == "1550.00"
        assert evaluate("{{calculateAnnualTotal missing}}", {}) == "0.00"

    def test_text_helpers(self):
        from services.handlebars_engine import evaluate

        values = {"name": "acme LTD", "tags": ["VAT", "Payroll"]}
        assert evaluate("{{uppercase name}}|{{lowercase name}}|{{capitalize name}}", values) == (
            "ACME LTD|acme ltd|Acme ltd"
        )
        assert evaluate('{{join tags " / "}}|{{join tags}}|{{length tags}}', values) == "VAT / Payroll|VAT, Payroll|2"
        assert evaluate('{{default missing "n/a"}}', values) == "n/a"

    def test_arithmetic(self):
        from services.handlebars_engine import evaluate

        values = {"a": 10, "b": "4"}
        assert evaluate("{{add a b}} {{subtract a b}} {{multiply a b}} {{divide a b}}", values) == "14 6 40 2.5"
        assert evaluate("{{divide a 0}}", values) == "10"

    def test_days_until_due(self):
        from services.handlebars_engine import evaluate

        assert evaluate("{{daysUntilDue missing}}", {}) == "0"

    def test_today_uses_uk_format(self):
        import re
        from services.handlebars_engine import evaluate

        assert re.fullmatch(r"\d{2}/\d{2}/\d{4}", evaluate("{{today}}", {}))


class TestParseErrors:
    """Malformed templates raise TemplateParsingFailed."""

    @pytest.mark.parametrize("template", [
        "{{#if a}}unclosed",
        "{{#if a}}x{{/each}}",
        "{{/if}}",
        "{{#if a}}x{{else}}y{{else}}z{{/if}}",
        "{{> header}}",
        "{{#custom a}}x{{/custom}}",
        "{{name",
    ])
    def test_malformed(self, template):
        from services.handlebars_engine import evaluate
        from services.letter_errors import TemplateParsingFailed

        with pytest.raises(TemplateParsingFailed):
            evaluate(template, {"a": True})

    def test_unknown_helper_in_subexpression(self):
        from services.handlebars_engine import evaluate
        from services.letter_errors import TemplateParsingFailed

        with pytest.raises(TemplateParsingFailed) as exc:
            evaluate("{{#if (shout a)}}x{{/if}}", {"a": 1})
        assert "shout" in exc.value.message
