import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from pydantic import ValidationError
from sqlmodel import Session, select

from core.database import engine, get_session, init_db
from core.security import get_token_claims, verify_payos_signature, verify_sync_token
from core.telemetry import instrument_app, setup_telemetry
from domains.payment.gateway import GatewayError
from domains.payment.history import (
    BillingServiceHistoryBackend,
    DatabaseHistoryBackend,
    HistoryAccessError,
    PaymentHistoryReader,
    resolve_identity,
)
from domains.payment.jobs import JOB_RECOVERY, JOB_REPAIR, JOB_SYNC, run_job
from domains.payment.model import PaymentReview
from domains.payment.repair import PatientLinkRepairJob, coverage_stats
from domains.payment.schemas import HistoryFilters, SyncRequest, SyncResult, WebhookEnvelope
from domains.payment.service import MAX_RECOVERY_HOURS, ReconciliationService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


setup_telemetry("medipay-api")
app = FastAPI(title="MediPay Reconcile", lifespan=lifespan)

instrument_app(app, engine)


# Dependency Injection
@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService()


@lru_cache(maxsize=1)
def get_repair_job() -> PatientLinkRepairJob:
    return PatientLinkRepairJob()


@lru_cache(maxsize=1)
def get_history_reader() -> PaymentHistoryReader:
    return PaymentHistoryReader(fallback=DatabaseHistoryBackend())


@lru_cache(maxsize=1)
def get_history_reader_v2() -> PaymentHistoryReader:
    return PaymentHistoryReader(
        fallback=DatabaseHistoryBackend(), primary=BillingServiceHistoryBackend()
    )


@app.get("/health", tags=["health"])  # type: ignore
async def health() -> Dict[str, str]:
    return {"status": "ok"}


# -------------------------------------------------------------
# reconciliation (admin)
# -------------------------------------------------------------


@app.post(
    "/api/payment/sync-job", tags=["reconciliation"], dependencies=[Depends(verify_sync_token)]
)  # type: ignore
def sync_job(
    request: Optional[SyncRequest] = Body(None),  # noqa: B008
    service: ReconciliationService = Depends(get_reconciliation_service),  # noqa: B008
) -> Dict[str, Any]:
    job: Dict[str, Any] = {"job": JOB_SYNC}
    if request is not None and request.orderCodes is not None:
        job["order_codes"] = request.orderCodes
    try:
        result = run_job(job, service=service)
    except Exception as err:
        logging.error(f"❌ [Sync] Job failed: {err}")
        raise HTTPException(status_code=500, detail="Sync job failed") from err

    if result is None:
        result = SyncResult(skipped=True)
    return {"success": True, "data": result.model_dump()}


@app.get(
    "/api/payment/recovery", tags=["reconciliation"], dependencies=[Depends(verify_sync_token)]
)  # type: ignore
def recovery(
    action: str = "check",
    hours: int = 24,
    service: ReconciliationService = Depends(get_reconciliation_service),  # noqa: B008
) -> Dict[str, Any]:
    if action not in ("check", "recover"):
        raise HTTPException(status_code=400, detail="action must be 'check' or 'recover'")
    if not 1 <= hours <= MAX_RECOVERY_HOURS:
        raise HTTPException(
            status_code=400, detail=f"hours must be between 1 and {MAX_RECOVERY_HOURS}"
        )

    try:
        report = run_job(
            {"job": JOB_RECOVERY, "action": action, "hours": hours}, service=service
        )
    except GatewayError as err:
        logging.error(f"❌ [Recovery] PayOS unavailable: {err}")
        raise HTTPException(status_code=502, detail="Payment gateway unavailable") from err

    if report is None:
        return {"success": True, "data": None, "message": "Recovery already running"}
    return {"success": True, "data": report.model_dump()}


@app.get(
    "/api/payment/coverage", tags=["reconciliation"], dependencies=[Depends(verify_sync_token)]
)  # type: ignore
def coverage(session: Session = Depends(get_session)) -> Dict[str, Any]:  # noqa: B008
    return {"success": True, "data": coverage_stats(session).model_dump()}


@app.post(
    "/api/payment/patient-link-repair",
    tags=["reconciliation"],
    dependencies=[Depends(verify_sync_token)],
)  # type: ignore
def patient_link_repair(
    limit: int = Query(100, ge=1, le=1000),
    repair: PatientLinkRepairJob = Depends(get_repair_job),  # noqa: B008
) -> Dict[str, Any]:
    result = run_job({"job": JOB_REPAIR, "limit": limit}, repair=repair)
    if result is None:
        return {"success": True, "data": None, "message": "Repair already running"}
    return {"success": True, "data": result.model_dump()}


@app.get(
    "/api/payment/reviews", tags=["reconciliation"], dependencies=[Depends(verify_sync_token)]
)  # type: ignore
def reviews(session: Session = Depends(get_session)) -> Dict[str, Any]:  # noqa: B008
    flagged = session.exec(
        select(PaymentReview)
        .where(PaymentReview.resolved == False)  # noqa: E712
        .order_by(PaymentReview.created_at)
    ).all()
    return {"success": True, "data": [review.model_dump(mode="json") for review in flagged]}


# -------------------------------------------------------------
# PayOS webhook
# -------------------------------------------------------------


@app.post("/api/payment/webhook", tags=["webhook"])  # type: ignore
def payos_webhook(
    body: Dict[str, Any] = Depends(verify_payos_signature),  # noqa: B008
    service: ReconciliationService = Depends(get_reconciliation_service),  # noqa: B008
) -> Dict[str, Any]:
    try:
        envelope = WebhookEnvelope.model_validate(body)
    except ValidationError as err:
        logging.warning(f" [Webhook] Ignoring malformed event: {err}")
        return {"success": True, "action": "ignored"}

    try:
        outcome = service.handle_webhook(envelope.data.to_transaction())
    except Exception as err:
        logging.error(f"❌ [Webhook] Error: {err}")
        raise HTTPException(status_code=500, detail="Internal Server Error") from err
    return {"success": True, "action": outcome}


# -------------------------------------------------------------
# patient payment history
# -------------------------------------------------------------


def _history(
    reader: PaymentHistoryReader,
    claims: Dict[str, Any],
    session: Session,
    page: int,
    limit: int,
    start_date: Optional[str],
    end_date: Optional[str],
    order_code: Optional[str],
    doctor_id: Optional[str],
    status: Optional[str],
) -> Dict[str, Any]:
    try:
        identity = resolve_identity(session, claims)
    except HistoryAccessError as err:
        raise HTTPException(status_code=err.status_code, detail=err.detail) from err

    try:
        filters = HistoryFilters(
            page=page,
            limit=limit,
            start_date=start_date,
            end_date=end_date,
            order_code=order_code,
            doctor_id=doctor_id,
            status=status,
        )
    except ValidationError as err:
        raise HTTPException(status_code=400, detail="Invalid query parameters") from err

    result = reader.read(identity, filters)
    return {"success": True, "data": result.model_dump(exclude={"source"}), "source": result.source}


@app.get("/api/patient/payment-history", tags=["history"])  # type: ignore
def payment_history(
    page: int = 1,
    limit: int = 10,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    order_code: Optional[str] = Query(None, alias="orderCode"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    status: Optional[str] = None,
    claims: Dict[str, Any] = Depends(get_token_claims),  # noqa: B008
    session: Session = Depends(get_session),  # noqa: B008
    reader: PaymentHistoryReader = Depends(get_history_reader),  # noqa: B008
) -> Dict[str, Any]:
    return _history(
        reader, claims, session, page, limit, start_date, end_date, order_code, doctor_id, status
    )


@app.get("/api/patient/payment-history-v2", tags=["history"])  # type: ignore
def payment_history_v2(
    page: int = 1,
    limit: int = 10,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    order_code: Optional[str] = Query(None, alias="orderCode"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    status: Optional[str] = None,
    claims: Dict[str, Any] = Depends(get_token_claims),  # noqa: B008
    session: Session = Depends(get_session),  # noqa: B008
    reader: PaymentHistoryReader = Depends(get_history_reader_v2),  # noqa: B008
) -> Dict[str, Any]:
    return _history(
        reader, claims, session, page, limit, start_date, end_date, order_code, doctor_id, status
    )
