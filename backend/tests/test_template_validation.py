"""
Template and request validation tests: every problem reported in one
ValidationFailed, sanitised copies returned on success.
"""
import pytest
import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


def _messages(exc):
    return [e["message"] for e in exc.value.validation_errors]


class TestCreateTemplate:
    """validate_create_template"""

    def test_name_and_content_required(self):
        from services.template_validation import validate_create_template
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateCreate

        with pytest.raises(ValidationFailed) as exc:
            validate_create_template(TemplateCreate(name="", content=""))
        fields = [e["field"] for e in exc.value.validation_errors]
        assert fields == ["name", "content"]
        assert exc.value.status_code == 400
        assert exc.value.to_dict()["code"] == "VALIDATION_FAILED"

    def test_lengths(self):
        from services.template_validation import validate_create_template
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateCreate

        with pytest.raises(ValidationFailed) as exc:
            validate_create_template(TemplateCreate(name="n" * 201, description="d" * 1001, content="x"))
        assert _messages(exc) == [
            "Template name must not exceed 200 characters",
            "Template description must not exceed 1000 characters",
        ]

    def test_placeholder_definitions(self):
        from services.template_validation import validate_create_template
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateCreate
        from models.placeholders import TemplatePlaceholder, PlaceholderValidation

        placeholders = [
            TemplatePlaceholder(key="fee", label="Fee"),
            TemplatePlaceholder(key="fee", label="Fee again"),
            TemplatePlaceholder(key="ref", label=" "),
            TemplatePlaceholder(key="code", label="Code", validation=PlaceholderValidation(min_length=5, max_length=2)),
            TemplatePlaceholder(key="ni", label="NI", validation=PlaceholderValidation(pattern="[unclosed")),
        ]
        with pytest.raises(ValidationFailed) as exc:
            validate_create_template(TemplateCreate(name="T", content="{{fee}}", placeholders=placeholders))

        messages = _messages(exc)
        assert "Duplicate placeholder key: fee" in messages
        assert "Placeholder ref must have a label" in messages
        assert "Invalid length constraints for code: min_length cannot exceed max_length" in messages
        assert any(m.startswith("Invalid regex pattern for ni") for m in messages)
        assert exc.value.validation_errors[0]["field"] == "placeholders.fee"

    def test_returns_sanitized_copy(self):
        from services.template_validation import validate_create_template
        from models.templates import TemplateCreate

        dto = TemplateCreate(
            name="  Welcome  ",
            description="Intro <script>alert(1)</script>letter",
            content="Dear {{clientName}},<script>alert('x')</script>\n<a onclick=\"x\">Hi</a>",
        )
        clean = validate_create_template(dto)
        assert clean.name == "Welcome"
        assert clean.description == "Intro letter"
        assert "<script" not in clean.content
        assert "onclick" not in clean.content
        assert clean.content.startswith("Dear {{clientName}},")
        assert dto.content.endswith("</a>")


class TestUpdateTemplate:
    """validate_update_template only checks supplied fields."""

    def test_empty_fields_rejected(self):
        from services.template_validation import validate_update_template
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateUpdate

        with pytest.raises(ValidationFailed) as exc:
            validate_update_template(TemplateUpdate(name="  ", content=" "))
        assert _messages(exc) == ["Template name cannot be empty", "Template content cannot be empty"]

    def test_partial_update_passes(self):
        from services.template_validation import validate_update_template
        from models.templates import TemplateUpdate

        dto = validate_update_template(TemplateUpdate(is_active=False))
        assert dto.is_active is False
        assert dto.name is None
        assert dto.content is None


class TestGenerationRequests:
    """Single and bulk generation requests."""

    def test_ids_required(self):
        from services.template_validation import validate_generate_request
        from services.letter_errors import ValidationFailed
        from models.letters import GenerateLetterRequest

        with pytest.raises(ValidationFailed) as exc:
            validate_generate_request(GenerateLetterRequest(template_id=" ", client_id=""))
        assert _messages(exc) == ["Template ID is required", "Client ID is required"]

    def test_manual_values_sanitized(self):
        from services.template_validation import validate_generate_request
        from models.letters import GenerateLetterRequest

        request = validate_generate_request(GenerateLetterRequest(
            template_id="tpl_1",
            client_id="c1",
            placeholder_values={
                "note": "Thanks<script>x()</script>",
                "items": ["ok", "javascript:bad"],
                "bad key!": "dropped",
            },
        ))
        assert request.placeholder_values == {"note": "Thanks", "items": ["ok", "bad"]}

    def test_bulk_requires_clients(self):
        from services.template_validation import validate_bulk_request
        from services.letter_errors import ValidationFailed
        from models.letters import BulkGenerateLetterRequest

        with pytest.raises(ValidationFailed) as exc:
            validate_bulk_request(BulkGenerateLetterRequest(template_id="tpl_1", client_ids=["", "  "]))
        assert _messages(exc) == ["At least one client ID is required"]

    def test_bulk_valid(self):
        from services.template_validation import validate_bulk_request
        from models.letters import BulkGenerateLetterRequest, OutputFormat

        request = validate_bulk_request(BulkGenerateLetterRequest(
            template_id="tpl_1", client_ids=["c1", "c2"], output_formats=[OutputFormat.DOCX]
        ))
        assert request.client_ids == ["c1", "c2"]
