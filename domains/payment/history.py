import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import Engine, case, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, func, select

from core.breaker import CircuitBreaker, CircuitOpenError
from domains.payment.model import (
    MedicalRecord,
    Patient,
    PaymentRecord,
    PaymentStatus,
    Profile,
)
from domains.payment.schemas import (
    HistoryFilters,
    HistoryPage,
    HistorySummary,
    Pagination,
)

logger = logging.getLogger(__name__)

BILLING_SERVICE_URL = os.getenv("BILLING_SERVICE_URL", "http://localhost:3004")
SERVICE_TIMEOUT_SECONDS = float(os.getenv("SERVICE_TIMEOUT_SECONDS", "2"))
BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "3"))
BREAKER_RESET_SECONDS = float(os.getenv("BREAKER_RESET_SECONDS", "30"))

ROLE_PATIENT = "patient"
ROLE_ADMIN = "admin"


class HistoryAccessError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class BillingServiceError(Exception):
    pass


@dataclass
class Identity:
    profile_id: str
    role: str
    full_name: Optional[str] = None
    patient_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def resolve_identity(session: Session, claims: Dict[str, Any]) -> Identity:
    """Token claims -> profile -> patient. Only patients and admins may read."""
    profile = session.get(Profile, claims["sub"])
    if profile is None:
        raise HistoryAccessError(401, "Profile not found")

    if profile.role not in (ROLE_PATIENT, ROLE_ADMIN):
        logger.warning(f" 🚫 [History] Access denied for role {profile.role}")
        raise HistoryAccessError(403, "Access denied - Invalid role")

    identity = Identity(profile.id, profile.role, profile.full_name)
    if profile.role == ROLE_PATIENT:
        patient = session.exec(
            select(Patient).where(Patient.profile_id == profile.id)
        ).first()
        identity.patient_id = patient.patient_id if patient else None
    return identity


def escape_like(value: str) -> str:
    """Match `value` literally inside a LIKE pattern escaped with a backslash."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def empty_page(filters: HistoryFilters, source: str) -> HistoryPage:
    return HistoryPage(
        payments=[],
        pagination=Pagination(page=filters.page, limit=filters.limit, total=0, totalPages=0),
        summary=HistorySummary(),
        source=source,
    )


class HistoryBackend:
    source = "unknown"

    def fetch(self, patient_id: Optional[str], filters: HistoryFilters) -> HistoryPage:
        raise NotImplementedError


class DatabaseHistoryBackend(HistoryBackend):
    source = "direct-database"

    def __init__(self, engine: Optional[Engine] = None) -> None:
        if engine is None:
            from core.database import engine as default_engine

            engine = default_engine
        self.engine = engine

    @staticmethod
    def _conditions(patient_id: Optional[str], filters: HistoryFilters) -> List[Any]:
        conditions: List[Any] = []
        if patient_id is not None:
            conditions.append(PaymentRecord.patient_id == patient_id)
        if filters.start_date:
            conditions.append(PaymentRecord.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(PaymentRecord.created_at <= filters.end_date)
        if filters.doctor_id:
            conditions.append(PaymentRecord.doctor_id == filters.doctor_id)
        if filters.order_code:
            conditions.append(
                col(PaymentRecord.order_code).ilike(
                    f"%{escape_like(filters.order_code)}%", escape="\\"
                )
            )
        if filters.status:
            conditions.append(PaymentRecord.status == filters.status)
        return conditions

    def fetch(self, patient_id: Optional[str], filters: HistoryFilters) -> HistoryPage:
        conditions = self._conditions(patient_id, filters)
        offset = (filters.page - 1) * filters.limit

        with Session(self.engine) as session:
            total = session.exec(
                select(func.count(col(PaymentRecord.id))).where(*conditions)
            ).one()
            payments = session.exec(
                select(PaymentRecord)
                .where(*conditions)
                .order_by(col(PaymentRecord.created_at).desc(), col(PaymentRecord.id).desc())
                .offset(offset)
                .limit(filters.limit)
            ).all()
            completed, total_paid, synced = session.exec(
                select(
                    func.count(col(PaymentRecord.id)),
                    func.coalesce(func.sum(PaymentRecord.amount), 0),
                    # synced: PayOS gave us either a transfer reference or a link id
                    func.count(
                        case(
                            (
                                or_(
                                    col(PaymentRecord.transaction_id).isnot(None),
                                    col(PaymentRecord.payment_link_id).isnot(None),
                                ),
                                1,
                            )
                        )
                    ),
                ).where(*conditions, PaymentRecord.status == PaymentStatus.COMPLETED.value)
            ).one()

            rows = [payment.model_dump(mode="json") for payment in payments]
            self._attach_medical_records(session, rows)

        return HistoryPage(
            payments=rows,
            pagination=Pagination(
                page=filters.page,
                limit=filters.limit,
                total=total,
                totalPages=math.ceil(total / filters.limit),
            ),
            summary=HistorySummary(
                totalPaid=int(total_paid),
                totalTransactions=completed,
                averageAmount=round(total_paid / completed, 2) if completed else 0,
                syncRate=round(synced * 100 / completed, 2) if completed else 0,
            ),
            source=self.source,
        )

    @staticmethod
    def _attach_medical_records(session: Session, rows: List[Dict[str, Any]]) -> None:
        record_ids = {row["record_id"] for row in rows if row.get("record_id")}
        if not record_ids:
            return
        records = {
            record.record_id: record
            for record in session.exec(
                select(MedicalRecord).where(col(MedicalRecord.record_id).in_(record_ids))
            ).all()
        }
        for row in rows:
            record = records.get(row.get("record_id"))
            if record is not None:
                row["medical_record"] = record.model_dump(
                    mode="json", include={"record_id", "diagnosis", "visit_date"}
                )


class BillingServiceHistoryBackend(HistoryBackend):
    source = "billing-service"

    def __init__(
        self,
        base_url: str = BILLING_SERVICE_URL,
        timeout: float = SERVICE_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def fetch(self, patient_id: Optional[str], filters: HistoryFilters) -> HistoryPage:
        params: Dict[str, Any] = {"page": filters.page, "limit": filters.limit}
        if patient_id is not None:
            params["patientId"] = patient_id
        if filters.start_date:
            params["startDate"] = filters.start_date.isoformat()
        if filters.end_date:
            params["endDate"] = filters.end_date.isoformat()
        if filters.order_code:
            params["orderCode"] = filters.order_code
        if filters.doctor_id:
            params["doctorId"] = filters.doctor_id
        if filters.status:
            params["status"] = filters.status

        response = self._client.get("/api/billing/payments", params=params)
        if response.status_code != 200:
            raise BillingServiceError(f"billing-service responded {response.status_code}")

        body = response.json()
        if not body.get("success") or not isinstance(body.get("data"), dict):
            raise BillingServiceError("billing-service returned an unsuccessful payload")

        data = body["data"]
        try:
            return HistoryPage(
                payments=data.get("payments") or [],
                pagination=data["pagination"],
                summary=data.get("summary") or {},
                source=self.source,
            )
        except (KeyError, ValueError) as e:
            raise BillingServiceError(f"billing-service payload invalid: {e}") from e


class PaymentHistoryReader:
    """
    One read path for payment history.
    `primary` (optional) is tried behind a circuit breaker; `fallback` answers
    whenever it fails or the circuit is open.
    """

    def __init__(
        self,
        fallback: HistoryBackend,
        primary: Optional[HistoryBackend] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.fallback = fallback
        self.primary = primary
        self.breaker = breaker or CircuitBreaker(
            "billing-service", BREAKER_FAILURE_THRESHOLD, BREAKER_RESET_SECONDS
        )

    def read(self, identity: Identity, filters: HistoryFilters) -> HistoryPage:
        if not identity.is_admin and identity.patient_id is None:
            logger.info(f" ℹ️ [History] No patient record for profile {identity.profile_id}")
            return empty_page(filters, "patient-not-found")

        patient_id = None if identity.is_admin else identity.patient_id
        page = self._read_primary(patient_id, filters)
        if page is None:
            try:
                page = self.fallback.fetch(patient_id, filters)
            except SQLAlchemyError as e:
                logger.error(f" ❌ [History] Database query failed: {e}")
                return empty_page(filters, "error-fallback")

        if patient_id is not None:
            owned = [row for row in page.payments if row.get("patient_id") == patient_id]
            if len(owned) != len(page.payments):
                logger.error(
                    f" 🚨 [History] Dropped {len(page.payments) - len(owned)} rows "
                    f"not owned by {patient_id} (source {page.source})"
                )
            page.payments = owned

        page.patient = {"patient_id": identity.patient_id, "full_name": identity.full_name}
        return page

    def _read_primary(
        self, patient_id: Optional[str], filters: HistoryFilters
    ) -> Optional[HistoryPage]:
        primary = self.primary
        if primary is None:
            return None
        try:
            return self.breaker.call(lambda: primary.fetch(patient_id, filters))
        except CircuitOpenError:
            logger.info(" ⚡ [History] billing-service circuit open, using database")
        except (httpx.HTTPError, BillingServiceError, ValueError) as e:
            logger.warning(f" ⚠️ [History] billing-service failed ({e}), using database")
        return None
