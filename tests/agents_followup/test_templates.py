"""Tests for step message rendering."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from agents.followup.config import FollowUpConfig
from agents.followup.dto import Language, MessageTemplate, SequenceStep
from agents.followup.templates import TemplateEngine

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)


@pytest.fixture
def engine(store):
    return TemplateEngine(FollowUpConfig(support_email="ar@gulf.example"), store)


class TestContext:
    """Template variables."""

    def test_build_context(self, engine, make_invoice):
        context = engine.build_context(make_invoice(total_amount=Decimal("12345.5")), NOW)

        assert context["invoiceNumber"] == "INV-2024-001"
        assert context["customerName"] == "Acme Trading LLC"
        assert context["invoiceAmount"] == "12,345.50"
        assert context["currency"] == "AED"
        assert context["dueDate"] == "10/03/2024"
        assert context["daysPastDue"] == "5"
        assert context["currentDate"] == "15/03/2024"
        assert context["companyName"] == "Gulf Supplies"
        assert context["supportEmail"] == "ar@gulf.example"

    def test_missing_values_are_left_out(self, engine, make_invoice):
        context = engine.build_context(make_invoice(customer_name=None), NOW)

        assert "customerName" not in context


class TestRenderStep:
    """Per-step rendering."""

    def test_renders_inline_content(self, engine, make_invoice):
        step = SequenceStep(
            step_number=1,
            delay_days=0,
            subject="Invoice {{ invoiceNumber }} is {{ daysPastDue }} days overdue",
            content="Dear {{ customerName }}, please pay {{ invoiceAmount }} {{ currency }}.",
        )

        outcome = engine.render_step(step, make_invoice(), NOW)

        assert outcome.warnings == []
        assert len(outcome.messages) == 1
        message = outcome.messages[0]
        assert message.subject == "Invoice INV-2024-001 is 5 days overdue"
        assert message.content == "Dear Acme Trading LLC, please pay 500.00 AED."
        assert message.language == Language.ENGLISH
        assert message.recipient_email == "billing@acme.example"

    def test_unresolved_variables_stay_literal(self, engine, make_invoice):
        step = SequenceStep(
            step_number=1,
            delay_days=0,
            content="Hello {{ customerName }}, ref {{ purchaseOrder }}",
        )

        outcome = engine.render_step(step, make_invoice(customer_name=None), NOW)

        assert outcome.messages[0].content == "Hello {{customerName}}, ref {{purchaseOrder}}"

    def test_broken_template_is_sent_unrendered_with_warning(self, engine, make_invoice):
        step = SequenceStep(step_number=1, delay_days=0, content="Pay {{ invoiceAmount ")

        outcome = engine.render_step(step, make_invoice(), NOW)

        assert outcome.messages[0].content == "Pay {{ invoiceAmount "
        assert len(outcome.warnings) == 1
        assert "does not compile" in outcome.warnings[0]

    def test_money_filter_accepts_formatted_amount(self, engine, make_invoice):
        step = SequenceStep(
            step_number=1,
            delay_days=0,
            content="Pay {{ invoiceAmount | money }} {{ currency }}, ref {{ invoiceNumber | money }}",
        )

        outcome = engine.render_step(step, make_invoice(total_amount=Decimal("1500")), NOW)

        assert outcome.warnings == []
        assert outcome.messages[0].content == "Pay 1,500.00 AED, ref INV-2024-001"

    def test_runtime_error_is_sent_unrendered_with_warning(self, engine, make_invoice):
        step = SequenceStep(
            step_number=1,
            delay_days=0,
            subject="Invoice {{ invoiceNumber }}",
            content="Share: {{ 1 / 0 }}",
        )

        outcome = engine.render_step(step, make_invoice(), NOW)

        message = outcome.messages[0]
        assert message.subject == "Invoice INV-2024-001"
        assert message.content == "Share: {{ 1 / 0 }}"
        assert len(outcome.warnings) == 1
        assert "failed to render" in outcome.warnings[0]
        assert "ZeroDivisionError" in outcome.warnings[0]

    def test_stored_template_is_preferred(self, engine, store, make_invoice):
        store.add_template(
            MessageTemplate("tpl-1", subject="Stored {{ invoiceNumber }}", content="Stored body")
        )
        step = SequenceStep(step_number=1, delay_days=0, template_id="tpl-1", subject="Inline")

        outcome = engine.render_step(step, make_invoice(), NOW)

        assert outcome.messages[0].subject == "Stored INV-2024-001"
        assert outcome.messages[0].template_id == "tpl-1"

    def test_missing_template_falls_back_to_inline(self, engine, make_invoice):
        step = SequenceStep(step_number=1, delay_days=0, template_id="tpl-missing", subject="Inline")

        outcome = engine.render_step(step, make_invoice(), NOW)

        assert outcome.messages[0].subject == "Inline"
        assert outcome.warnings == ["Template tpl-missing not found, using inline step content"]

    def test_both_languages_render_two_messages(self, engine, make_invoice):
        step = SequenceStep(
            step_number=1,
            delay_days=0,
            subject="Invoice {{ invoiceNumber }}",
            content="English body",
            language=Language.BOTH,
            metadata={"subject_ar": "فاتورة {{ invoiceNumber }}"},
        )

        outcome = engine.render_step(step, make_invoice(), NOW)

        assert [m.language for m in outcome.messages] == [Language.ENGLISH, Language.ARABIC]
        assert outcome.messages[1].subject == "فاتورة INV-2024-001"
        # No Arabic body configured
        assert outcome.messages[1].content == "English body"
