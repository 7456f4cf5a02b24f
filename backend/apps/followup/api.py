import logging
import time
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from backend.core.observability import metrics, set_company_id, set_trace_id

from .service import FollowUpServices, get_services

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _done(route: str, start: float) -> None:
    metrics.observe_duration(start, "followup_api_duration_ms", labels={"route": route})


class ProcessRequest(BaseModel):
    run_monitor: bool = True
    run_pending: bool = True
    limit: int | None = Field(default=None, ge=1)


class ManualTriggerRequest(BaseModel):
    invoice_id: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)
    reason: str | None = None


class PaymentReceivedRequest(BaseModel):
    invoice_id: str = Field(min_length=1)
    amount: Decimal | None = None


class StatusChangedRequest(BaseModel):
    invoice_id: str = Field(min_length=1)
    from_status: str | None = None
    to_status: str = Field(min_length=1)


@router.post("/cron/process-sequences", response_model=dict[str, Any])
def process_sequences(
    body: ProcessRequest | None = None,
    services: FollowUpServices = Depends(get_services),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
):
    start = time.time()
    trace_id = set_trace_id(trace_header)
    body = body or ProcessRequest()

    response: dict[str, Any] = {}
    if body.run_monitor:
        response["monitor"] = services.monitor.run_once().to_dict()
    if body.run_pending:
        response["pending"] = services.controller.process_pending_executions(body.limit).to_dict()

    _done("process_sequences", start)
    logger.info(
        "followup_cron_processed",
        extra={"trace_id": trace_id, "duration_ms": (time.time() - start) * 1000.0},
    )
    return response


@router.post("/sequences/{sequence_id}/trigger", response_model=dict[str, Any])
def trigger_sequence(
    sequence_id: str,
    body: ManualTriggerRequest,
    services: FollowUpServices = Depends(get_services),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
):
    start = time.time()
    trace_id = set_trace_id(trace_header)

    sequence = services.store.get_sequence(sequence_id)
    if sequence is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", f"Sequence not found: {sequence_id}")
    if services.store.get_invoice(body.invoice_id) is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", f"Invoice not found: {body.invoice_id}")
    set_company_id(sequence.company_id)

    result = services.monitor.manual_trigger(sequence_id, body.invoice_id, body.actor_id, body.reason)

    _done("trigger_sequence", start)
    logger.info(
        "followup_manual_trigger",
        extra={
            "trace_id": trace_id,
            "sequence_id": sequence_id,
            "invoice_id": body.invoice_id,
            "actor_id": body.actor_id,
            "triggered": result.triggered,
        },
    )
    return result.to_dict()


@router.get("/sequences/{sequence_id}/executions/{invoice_id}", response_model=dict[str, Any])
def get_execution(
    sequence_id: str,
    invoice_id: str,
    services: FollowUpServices = Depends(get_services),
):
    start = time.time()
    record = services.controller.get_execution_status(sequence_id, invoice_id)
    if record is None:
        _error(
            status.HTTP_404_NOT_FOUND,
            "not_found",
            f"No execution for sequence {sequence_id} and invoice {invoice_id}",
        )
    response = record.to_dict()
    response["steps"] = [
        {
            "step_number": entry.step_number,
            "executed_at": entry.executed_at.isoformat(),
            "dispatch_handles": list(entry.dispatch_handles),
        }
        for entry in services.store.list_step_logs(record.execution_id)
    ]
    _done("get_execution", start)
    return response


@router.post("/hooks/payment-received", response_model=dict[str, Any])
def payment_received(
    body: PaymentReceivedRequest,
    services: FollowUpServices = Depends(get_services),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
):
    start = time.time()
    set_trace_id(trace_header)
    if services.store.get_invoice(body.invoice_id) is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", f"Invoice not found: {body.invoice_id}")

    result = services.monitor.on_payment_received(body.invoice_id, body.amount)
    _done("payment_received", start)
    return result.to_dict()


@router.post("/hooks/invoice-status-changed", response_model=dict[str, Any])
def invoice_status_changed(
    body: StatusChangedRequest,
    services: FollowUpServices = Depends(get_services),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
):
    start = time.time()
    set_trace_id(trace_header)
    if services.store.get_invoice(body.invoice_id) is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", f"Invoice not found: {body.invoice_id}")

    result = services.monitor.on_invoice_status_changed(body.invoice_id, body.from_status, body.to_status)
    _done("invoice_status_changed", start)
    return result.to_dict()


@router.get("/followup/metrics", response_model=dict[str, Any])
def followup_metrics(
    company_id: str | None = None,
    services: FollowUpServices = Depends(get_services),
):
    return {
        "triggers": services.monitor.get_monitoring_metrics(company_id).to_dict(),
        "counters": metrics.get_metrics(),
    }
