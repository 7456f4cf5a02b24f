"""Jinja2 rendering of follow-up step messages."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from jinja2 import ChainableUndefined, Environment, TemplateError, TemplateSyntaxError

from .config import FollowUpConfig
from .dto import Invoice, Language, MessageTemplate, RenderedMessage, SequenceStep
from .ports import PersistencePort


class LiteralUndefined(ChainableUndefined):
    """Renders unresolved variables back as their `{{name}}` placeholder."""

    __slots__ = ()

    def __str__(self) -> str:
        return "{{" + (self._undefined_name or "") + "}}"


@dataclass
class RenderOutcome:
    """Rendered messages of one step plus rendering warnings."""

    messages: list[RenderedMessage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class TemplateEngine:
    """Jinja2 template engine for follow-up messages."""

    def __init__(self, config: FollowUpConfig, store: PersistencePort | None = None):
        """Initialize template engine.

        Args:
            config: Follow-up configuration
            store: Persistence port used to resolve step template IDs
        """
        self.config = config
        self.store = store
        self.logger = logging.getLogger(__name__)

        self.env = Environment(
            undefined=LiteralUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["money"] = self._money_filter
        self.env.filters["datefmt"] = self._datefmt_filter

    def _money_filter(self, amount) -> str:
        """Format an amount with thousands separators and two decimals.

        Already formatted amounts ("1,500.00") are accepted; anything that is
        not a number is returned as given.
        """
        try:
            return f"{Decimal(str(amount).replace(',', '').strip()):,.2f}"
        except (InvalidOperation, ValueError):
            return str(amount)

    def _datefmt_filter(self, date_obj, format_str: str = "%d/%m/%Y") -> str:
        """Format date object as string."""
        if hasattr(date_obj, "strftime"):
            return date_obj.strftime(format_str)
        return str(date_obj)

    def build_context(self, invoice: Invoice, now: datetime | None = None) -> dict[str, str]:
        """Template variables available to every step.

        Args:
            invoice: Invoice snapshot
            now: Rendering instant

        Returns:
            Variable mapping
        """
        if now is None:
            now = datetime.now(UTC)

        context = {
            "invoiceNumber": invoice.invoice_number,
            "customerName": invoice.customer_name,
            "invoiceAmount": self._money_filter(invoice.total_amount),
            "currency": invoice.currency,
            "dueDate": self._datefmt_filter(invoice.due_date),
            "companyName": invoice.company_name,
            "daysPastDue": str(invoice.days_overdue(now)),
            "currentDate": self._datefmt_filter(now),
            "supportEmail": self.config.support_email,
        }
        # Missing values stay as placeholders
        return {key: value for key, value in context.items() if value is not None}

    def render_text(self, text: str, context: dict[str, str]) -> tuple[str, str | None]:
        """Render one template string.

        Args:
            text: Template source
            context: Template variables

        Returns:
            Tuple of (rendered text, warning). Text that does not compile or
            fails while rendering is returned unrendered with a warning.
        """
        try:
            template = self.env.from_string(text)
        except TemplateSyntaxError as e:
            return text, f"Template does not compile, sent unrendered: {e.message}"

        try:
            return template.render(**context), None
        except TemplateError as e:
            return text, f"Template failed to render, sent unrendered: {e}"
        except Exception as e:
            # Filters and tests raise plain Python errors
            return text, f"Template failed to render, sent unrendered: {type(e).__name__}: {e}"

    def _resolve_source(self, step: SequenceStep, warnings: list[str]) -> MessageTemplate:
        """Pick the stored template of a step or its inline content."""
        inline = MessageTemplate(
            template_id=step.template_id or "",
            subject=step.subject,
            content=step.content,
            subject_ar=step.metadata.get("subject_ar"),
            content_ar=step.metadata.get("content_ar"),
        )
        if not step.template_id:
            return inline

        stored = self.store.get_template(step.template_id) if self.store else None
        if stored is None:
            warning = f"Template {step.template_id} not found, using inline step content"
            self.logger.warning(warning, extra={"template_id": step.template_id})
            warnings.append(warning)
            return inline
        return stored

    def render_step(
        self, step: SequenceStep, invoice: Invoice, now: datetime | None = None
    ) -> RenderOutcome:
        """Render a step once per language it is sent in.

        Args:
            step: Sequence step
            invoice: Invoice snapshot
            now: Rendering instant

        Returns:
            Rendered messages (two for BOTH) and warnings
        """
        outcome = RenderOutcome()
        source = self._resolve_source(step, outcome.warnings)
        context = self.build_context(invoice, now)

        for language in step.language.expand():
            subject_src, content_src = source.subject, source.content
            if language == Language.ARABIC:
                subject_src = source.subject_ar or subject_src
                content_src = source.content_ar or content_src

            subject, subject_warning = self.render_text(subject_src, context)
            content, content_warning = self.render_text(content_src, context)
            for warning in (subject_warning, content_warning):
                if warning:
                    self.logger.warning(
                        warning,
                        extra={"step_number": step.step_number, "invoice_id": invoice.invoice_id},
                    )
                    outcome.warnings.append(warning)

            outcome.messages.append(
                RenderedMessage(
                    subject=subject,
                    content=content,
                    language=language,
                    recipient_email=invoice.customer_email,
                    recipient_name=invoice.customer_name,
                    template_id=step.template_id,
                )
            )

        return outcome
