"""Test configuration and fixtures for the follow-up agent."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from agents.followup.config import FollowUpConfig
from agents.followup.controller import ExecutionController
from agents.followup.dispatch import NoOpDispatcher
from agents.followup.dto import Invoice, SequenceDefinition, SequenceStep
from agents.followup.errors import DispatchError
from agents.followup.ids import SequentialIdGenerator
from agents.followup.monitor import TriggerMonitor
from agents.followup.store import InMemoryStore
from backend.core.observability import metrics

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)
COMPANY_ID = "company-1"


class FrozenClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class WindowCalendar:
    """Closed until `opens_at`, open afterwards."""

    def __init__(self, opens_at: datetime | None = None):
        self.opens_at = opens_at

    def is_permitted_now(self, instant: datetime) -> bool:
        return self.opens_at is None or instant >= self.opens_at

    def next_permitted_instant(self, instant: datetime) -> datetime:
        if self.opens_at is None or instant >= self.opens_at:
            return instant
        return self.opens_at


class FailingDispatcher(NoOpDispatcher):
    """Rejects every message."""

    def __init__(self):
        super().__init__(prefix="fail")
        self.attempts = 0

    def dispatch(self, message, hints):
        self.attempts += 1
        raise DispatchError("provider unavailable")


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def calendar():
    return WindowCalendar()


@pytest.fixture
def config():
    return FollowUpConfig(max_workers=2)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def dispatcher():
    return NoOpDispatcher()


@pytest.fixture
def failing_dispatcher():
    return FailingDispatcher()


@pytest.fixture
def make_invoice():
    def _make(**overrides) -> Invoice:
        values = {
            "invoice_id": "inv-1",
            "company_id": COMPANY_ID,
            "invoice_number": "INV-2024-001",
            "status": "SENT",
            "due_date": NOW - timedelta(days=5),
            "total_amount": Decimal("500.00"),
            "currency": "AED",
            "customer_id": "cust-1",
            "customer_name": "Acme Trading LLC",
            "customer_email": "billing@acme.example",
            "company_name": "Gulf Supplies",
        }
        values.update(overrides)
        return Invoice(**values)

    return _make


@pytest.fixture
def make_sequence():
    def _make(
        sequence_id: str = "seq-overdue",
        name: str = "Overdue collection",
        delays: tuple[int, ...] = (0, 7, 7),
        **overrides,
    ) -> SequenceDefinition:
        steps = [
            SequenceStep(
                step_number=i + 1,
                delay_days=delay,
                subject=f"Step {i + 1}: invoice {{{{ invoiceNumber }}}}",
                content="Dear {{ customerName }}, {{ invoiceAmount }} {{ currency }} is due.",
            )
            for i, delay in enumerate(delays)
        ]
        values = {
            "sequence_id": sequence_id,
            "company_id": COMPANY_ID,
            "name": name,
            "steps": steps,
        }
        values.update(overrides)
        return SequenceDefinition(**values)

    return _make


@pytest.fixture
def controller(store, dispatcher, calendar, config, clock):
    return ExecutionController(
        store,
        dispatcher,
        calendar,
        config,
        id_generator=SequentialIdGenerator("EXEC"),
        clock=clock,
    )


@pytest.fixture
def monitor(store, controller, calendar, config, clock):
    return TriggerMonitor(
        store,
        controller,
        calendar,
        config,
        id_generator=SequentialIdGenerator("EVT"),
        clock=clock,
    )
