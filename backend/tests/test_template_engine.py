"""
Template engine tests: syntax selection between legacy and Handlebars bodies
and the evaluator input built from a resolution result.
"""
import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


def _resolved(key, value, formatted, placeholder_type=None):
    from models.placeholders import ResolvedPlaceholder, PlaceholderSource, PlaceholderType

    return ResolvedPlaceholder(
        key=key,
        value=value,
        formatted_value=formatted,
        source=PlaceholderSource.MANUAL,
        type=placeholder_type or PlaceholderType.TEXT,
    )


class TestSyntaxSelection:
    """One strategy per body, chosen by Handlebars block markers."""

    def test_select_syntax(self):
        from services.template_engine import select_syntax, TemplateSyntax

        assert select_syntax("{{#if vat}}x{{/if}}") == TemplateSyntax.HANDLEBARS
        assert select_syntax("{{#each items}}{{this}}{{/each}}") == TemplateSyntax.HANDLEBARS
        assert select_syntax("a {{else}} b") == TemplateSyntax.HANDLEBARS
        assert select_syntax("{{if:vat}}x{{endif}} {{clientName}}") == TemplateSyntax.LEGACY
        assert select_syntax("") == TemplateSyntax.LEGACY

    def test_evaluate_dispatches(self):
        from services.template_engine import evaluate, TemplateSyntax

        values = {"vat": True, "clientName": "Acme"}
        assert evaluate("{{if:vat}}VAT {{endif}}{{clientName}}", values) == "VAT Acme"
        assert evaluate("{{#if vat}}VAT {{/if}}{{clientName}}", values) == "VAT Acme"
        # Forcing the legacy strategy leaves Handlebars blocks alone
        assert evaluate("{{#if vat}}x{{/if}}", values, TemplateSyntax.LEGACY) == "{{#if vat}}x{{/if}}"


class TestTemplateValues:
    """Formatted scalars, raw collections and nested dotted keys."""

    def test_scalars_use_formatted_values(self):
        from services.template_engine import build_template_values
        from models.placeholders import PlaceholderResolutionResult, PlaceholderType

        resolution = PlaceholderResolutionResult(placeholders={
            "fee": _resolved("fee", 1500, "£1,500", PlaceholderType.CURRENCY),
            "dueDate": _resolved("dueDate", "2024-01-31", "31/01/2024", PlaceholderType.DATE),
        })
        assert build_template_values(resolution) == {"fee": "£1,500", "dueDate": "31/01/2024"}

    def test_raw_values_for_lists_flags_and_conditionals(self):
        from services.template_engine import build_template_values
        from models.placeholders import PlaceholderResolutionResult, PlaceholderType

        directors = [{"name": "Ann"}]
        resolution = PlaceholderResolutionResult(placeholders={
            "directors": _resolved("directors", directors, "[{'name': 'Ann'}]", PlaceholderType.LIST),
            "isVatRegistered": _resolved("isVatRegistered", True, "true"),
            "hasPayroll": _resolved("hasPayroll", "yes", "yes", PlaceholderType.CONDITIONAL),
        })
        values = build_template_values(resolution)
        assert values["directors"] is directors
        assert values["isVatRegistered"] is True
        assert values["hasPayroll"] == "yes"

    def test_dotted_keys_are_nested(self):
        from services.template_engine import build_template_values, evaluate
        from models.placeholders import PlaceholderResolutionResult

        resolution = PlaceholderResolutionResult(placeholders={
            "client.name": _resolved("client.name", "Acme", "Acme"),
            "client.email": _resolved("client.email", "a@acme.co.uk", "a@acme.co.uk"),
        })
        values = build_template_values(resolution)
        assert values["client"] == {"name": "Acme", "email": "a@acme.co.uk"}
        assert values["client.name"] == "Acme"
        assert evaluate("{{#if client.name}}{{client.name}} <{{client.email}}>{{/if}}", values) == "Acme <a@acme.co.uk>"
        assert evaluate("{{client.name}}", values) == "Acme"

    def test_show_missing_marks_empty_values(self):
        from services.template_engine import build_template_values
        from models.placeholders import PlaceholderResolutionResult

        resolution = PlaceholderResolutionResult(placeholders={
            "dueDate": _resolved("dueDate", None, ""),
            "clientName": _resolved("clientName", "Acme", "Acme"),
        })
        assert build_template_values(resolution, show_missing=True) == {
            "dueDate": "[dueDate]",
            "clientName": "Acme",
        }
        assert build_template_values(resolution)["dueDate"] == ""

    def test_address_mapping_renders_formatted_in_both_syntaxes(self):
        from services.template_engine import build_template_values, evaluate, TemplateSyntax
        from services.value_formatter import format_value
        from models.placeholders import PlaceholderResolutionResult, PlaceholderType

        address = {"line1": "1 High Street", "city": "Leeds", "postcode": "LS1 1AA"}
        resolution = PlaceholderResolutionResult(placeholders={
            "address": _resolved(
                "address", address, format_value(address, PlaceholderType.ADDRESS), PlaceholderType.ADDRESS
            ),
        })
        values = build_template_values(resolution)

        assert values["address"] == "1 High Street\nLeeds\nLS1 1AA"
        expected = "To:\n1 High Street\nLeeds\nLS1 1AA"
        assert evaluate("To:\n{{address}}", values, TemplateSyntax.LEGACY) == expected
        assert evaluate("To:\n{{address}}", values, TemplateSyntax.HANDLEBARS) == expected

    def test_mapping_under_list_type_stays_raw(self):
        from services.template_engine import build_template_values
        from models.placeholders import PlaceholderResolutionResult, PlaceholderType

        partners = {"lead": "Ann"}
        resolution = PlaceholderResolutionResult(placeholders={
            "partners": _resolved("partners", partners, "{'lead': 'Ann'}", PlaceholderType.LIST),
        })
        assert build_template_values(resolution)["partners"] is partners
