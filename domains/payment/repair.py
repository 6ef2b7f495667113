"""
Patient-ID backfill.

Payments are created before the medical record / appointment they belong to is
linked, so some rows end up without a `patient_id`. This module resolves the
owner from the related tables and repairs the rows with an audit trail, checking
coverage before and after each run.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import Engine
from sqlmodel import Session, col, func, select

from domains.payment.model import (
    Appointment,
    MedicalRecord,
    Patient,
    PatientLinkRepair,
    PaymentRecord,
)
from domains.payment.schemas import CoverageStats, RepairResult

logger = logging.getLogger(__name__)

DESCRIPTION_REF = re.compile(r"\b(patient_id|record_id):\s*([A-Za-z0-9-]+)", re.IGNORECASE)


class RepairInvariantError(Exception):
    """Linked payments decreased across a repair run."""


@dataclass
class PatientLink:
    patient_id: str
    doctor_id: Optional[str]
    source: str


def parse_description_refs(description: Optional[str]) -> Dict[str, str]:
    refs: Dict[str, str] = {}
    for key, value in DESCRIPTION_REF.findall(description or ""):
        refs.setdefault(key.lower(), value)
    return refs


def resolve_patient_link(session: Session, payment: PaymentRecord) -> Optional[PatientLink]:
    """medical_records -> appointments -> `patient_id: X` in the description."""
    if payment.record_id:
        record = session.get(MedicalRecord, payment.record_id)
        if record and record.patient_id:
            return PatientLink(record.patient_id, record.doctor_id, "medical_records")

    if payment.id is not None:
        appointment = session.exec(
            select(Appointment).where(Appointment.payment_id == payment.id)
        ).first()
        if appointment and appointment.patient_id:
            return PatientLink(
                appointment.patient_id, appointment.doctor_id, "appointments"
            )

    patient_ref = parse_description_refs(payment.description).get("patient_id")
    if patient_ref and session.get(Patient, patient_ref) is not None:
        return PatientLink(patient_ref, None, "description")

    return None


def coverage_stats(session: Session) -> CoverageStats:
    total = session.exec(select(func.count(col(PaymentRecord.id)))).one()
    linked = session.exec(select(func.count(col(PaymentRecord.patient_id)))).one()
    rate = round(linked / total, 4) if total else 1.0
    return CoverageStats(
        total=total, linked=linked, missing=total - linked, coverageRate=rate
    )


class PatientLinkRepairJob:
    def __init__(self, engine: Optional[Engine] = None, limit: int = 100) -> None:
        if engine is None:
            from core.database import engine as default_engine

            engine = default_engine
        self.engine = engine
        self.limit = limit

    def run(self, limit: Optional[int] = None) -> RepairResult:
        job_run_id = uuid.uuid4().hex
        limit = limit or self.limit

        with Session(self.engine) as session:
            before = coverage_stats(session)
            candidate_ids = session.exec(
                select(PaymentRecord.id)
                .where(col(PaymentRecord.patient_id).is_(None))
                .order_by(col(PaymentRecord.created_at).desc())
                .limit(limit)
            ).all()

        logger.info(
            f" 🔍 [Repair] {len(candidate_ids)} payments without patient_id "
            f"(coverage {before.coverageRate:.2%}), run {job_run_id}"
        )

        results: List[Dict[str, Any]] = []
        recovered = 0
        for payment_id in candidate_ids:
            outcome = self._repair_one(payment_id, job_run_id)
            if outcome["status"] == "recovered":
                recovered += 1
            results.append(outcome)

        with Session(self.engine) as session:
            after = coverage_stats(session)

        if after.linked < before.linked:
            raise RepairInvariantError(
                f"linked payments dropped from {before.linked} to {after.linked}"
            )

        logger.info(
            f" 📊 [Repair] {recovered}/{len(candidate_ids)} recovered, coverage "
            f"{before.coverageRate:.2%} -> {after.coverageRate:.2%}"
        )
        return RepairResult(
            jobRunId=job_run_id,
            total=len(candidate_ids),
            recovered=recovered,
            coverageBefore=before.coverageRate,
            coverageAfter=after.coverageRate,
            results=results,
        )

    def _repair_one(self, payment_id: int, job_run_id: str) -> Dict[str, Any]:
        with Session(self.engine) as session:
            try:
                payment = session.get(PaymentRecord, payment_id)
                if payment is None or payment.patient_id is not None:
                    return {"id": payment_id, "status": "skipped"}

                link = resolve_patient_link(session, payment)
                if link is None:
                    return {
                        "id": payment_id,
                        "order_code": payment.order_code,
                        "status": "not_found",
                    }

                session.add(
                    PatientLinkRepair(
                        payment_id=payment_id,
                        order_code=payment.order_code,
                        previous_patient_id=payment.patient_id,
                        patient_id=link.patient_id,
                        source=link.source,
                        job_run_id=job_run_id,
                    )
                )
                payment.patient_id = link.patient_id
                if link.doctor_id and not payment.doctor_id:
                    payment.doctor_id = link.doctor_id
                session.add(payment)
                session.commit()
            except Exception as e:
                session.rollback()
                logger.error(f" ❌ [Repair] Payment {payment_id} failed: {e}")
                return {"id": payment_id, "status": "error", "message": str(e)}

        logger.info(
            f" ✅ [Repair] Payment {payment_id} -> {link.patient_id} ({link.source})"
        )
        return {
            "id": payment_id,
            "status": "recovered",
            "patient_id": link.patient_id,
            "source": link.source,
        }
