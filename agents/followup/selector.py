"""Candidate invoice selection per trigger type."""

import logging
from datetime import datetime, timedelta

from .config import FollowUpConfig
from .dto import UNPAID_STATUSES, CandidateQuery, Invoice, TriggerType
from .ports import PersistencePort

logger = logging.getLogger(__name__)


class CandidateSelector:
    """Coarse, company-scoped invoice filter ahead of condition evaluation."""

    def __init__(self, store: PersistencePort, config: FollowUpConfig):
        self.store = store
        self.config = config

    def build_query(self, company_id: str, trigger_type: TriggerType, now: datetime) -> CandidateQuery:
        """Build the persistence query for a trigger type.

        Args:
            company_id: Company scope
            trigger_type: Trigger type of the rule being evaluated
            now: Evaluation instant

        Returns:
            Candidate query
        """
        if trigger_type == TriggerType.DUE_DATE_REACHED:
            return CandidateQuery(
                company_id=company_id,
                statuses=UNPAID_STATUSES,
                limit=self.config.candidate_batch_size,
                due_on_or_before=now + timedelta(days=self.config.due_lookahead_days),
            )

        if trigger_type == TriggerType.OVERDUE_DAYS:
            return CandidateQuery(
                company_id=company_id,
                statuses=UNPAID_STATUSES,
                limit=self.config.candidate_batch_size,
                due_before=now,
            )

        return CandidateQuery(
            company_id=company_id,
            statuses=UNPAID_STATUSES,
            limit=self.config.candidate_batch_size,
        )

    def select(self, company_id: str, trigger_type: TriggerType, now: datetime) -> list[Invoice]:
        """Fetch candidate invoices for one rule.

        Args:
            company_id: Company scope
            trigger_type: Trigger type of the rule being evaluated
            now: Evaluation instant

        Returns:
            Unpaid invoices of the company, at most `candidate_batch_size`
        """
        query = self.build_query(company_id, trigger_type, now)
        invoices = self.store.find_candidate_invoices(query)

        candidates = [
            invoice
            for invoice in invoices
            if invoice.company_id == company_id and invoice.status.upper() in UNPAID_STATUSES
        ][: query.limit]

        logger.debug(
            "Selected candidates",
            extra={
                "company_id": company_id,
                "trigger_type": trigger_type.value,
                "count": len(candidates),
            },
        )
        return candidates
