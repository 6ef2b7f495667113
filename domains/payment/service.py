import logging
import os
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from domains.payment.gateway import PayOSClient, map_gateway_status
from domains.payment.model import (
    PaymentRecord,
    PaymentReview,
    PaymentStatus,
    can_transition,
    utc_now,
)
from domains.payment.repair import parse_description_refs, resolve_patient_link
from domains.payment.schemas import (
    GatewayTransaction,
    RecoveryReport,
    RecoverySummary,
    StatusMismatch,
    SyncResult,
)

logger = logging.getLogger(__name__)

SYNC_LOOKBACK_HOURS = int(os.getenv("SYNC_LOOKBACK_HOURS", "48"))
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "100"))
SYNC_CONCURRENCY = int(os.getenv("SYNC_CONCURRENCY", "5"))
MAX_RECOVERY_HOURS = 720

VALID_ORDER_CODE = re.compile(r"^\d{1,19}$")

UNCHANGED = "unchanged"
UPDATED = "updated"
FLAGGED = "flagged"
RECOVERED = "recovered"

OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class ReconciliationService:
    """
    Keeps the local payments table in line with PayOS.
    PayOS is the source of truth for status; conflicts it cannot settle safely
    (amount differences, status regressions) go to payment_reviews instead.
    """

    def __init__(
        self,
        gateway: Optional[PayOSClient] = None,
        engine: Optional[Engine] = None,
        concurrency: int = SYNC_CONCURRENCY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if engine is None:
            from core.database import engine as default_engine

            engine = default_engine
        self.gateway = gateway or PayOSClient()
        self.engine = engine
        self.concurrency = max(1, concurrency)
        self.clock = clock

    # ------------------------------------------------------------------
    # sync job
    # ------------------------------------------------------------------

    def sync_pending(self, order_codes: Optional[Sequence[str]] = None) -> SyncResult:
        started = time.monotonic()
        candidates = self._load_open_payments(order_codes)
        result = SyncResult(total=len(candidates))
        logger.info(f"🔄 [Sync] Checking {len(candidates)} open payments with PayOS...")

        # gateway queries fan out; writes are applied in fetch order
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            queries: List[Tuple[int, str, Future[GatewayTransaction]]] = [
                (payment_id, code, pool.submit(self.gateway.get_payment, code))
                for payment_id, code in candidates
            ]
            for payment_id, code, future in queries:
                try:
                    transaction = future.result()
                    outcome = self._apply_to_payment(payment_id, transaction)
                except Exception as e:
                    logger.error(f" ❌ [Sync] Payment {code} failed: {e}")
                    result.failed += 1
                    continue

                if outcome == UPDATED:
                    result.updated += 1
                elif outcome == FLAGGED:
                    result.flagged += 1

        result.duration = int((time.monotonic() - started) * 1000)
        logger.info(
            f"📊 [Sync] Completed: {result.updated}/{result.total} updated, "
            f"{result.failed} failed, {result.flagged} flagged in {result.duration}ms"
        )
        return result

    def _load_open_payments(
        self, order_codes: Optional[Sequence[str]]
    ) -> List[Tuple[int, str]]:
        statement = select(PaymentRecord).where(
            col(PaymentRecord.status).in_(OPEN_STATUSES)
        )
        if order_codes is not None:
            statement = statement.where(col(PaymentRecord.order_code).in_(order_codes))
        else:
            since = self.clock() - timedelta(hours=SYNC_LOOKBACK_HOURS)
            statement = (
                statement.where(PaymentRecord.created_at >= since)
                .order_by(col(PaymentRecord.created_at), col(PaymentRecord.id))
                .limit(SYNC_BATCH_SIZE)
            )

        with Session(self.engine) as session:
            payments = session.exec(statement).all()

        candidates = []
        for payment in payments:
            if payment.id is None or not VALID_ORDER_CODE.match(payment.order_code):
                logger.warning(f" ⚠️ [Sync] Skipping invalid order code {payment.order_code!r}")
                continue
            candidates.append((payment.id, payment.order_code))
        return candidates

    def _apply_to_payment(self, payment_id: int, transaction: GatewayTransaction) -> str:
        with Session(self.engine) as session:
            payment = session.get(PaymentRecord, payment_id)
            if payment is None:
                return UNCHANGED
            outcome = self.apply_gateway_state(session, payment, transaction)
            session.commit()
        return outcome

    # ------------------------------------------------------------------
    # shared state transition
    # ------------------------------------------------------------------

    def apply_gateway_state(
        self,
        session: Session,
        payment: PaymentRecord,
        transaction: GatewayTransaction,
    ) -> str:
        """
        Move `payment` to the gateway's status when the transition is allowed.
        Does not commit.
        """
        target = map_gateway_status(transaction.status)

        # amount conflicts park the payment whatever its status; an open payment
        # stays open until the review is resolved
        if transaction.amount != payment.amount:
            self._flag(
                session,
                payment,
                transaction,
                "amount_mismatch",
                f"local {payment.amount} != gateway {transaction.amount}",
            )
            return FLAGGED

        gateway_patient = parse_description_refs(transaction.description).get("patient_id")
        if gateway_patient and payment.patient_id and gateway_patient != payment.patient_id:
            self._flag(
                session,
                payment,
                transaction,
                "patient_mismatch",
                f"local {payment.patient_id} != gateway {gateway_patient}",
            )
            return FLAGGED

        if payment.status == target.value:
            return UNCHANGED

        # PayOS reports PENDING again while a transfer is still settling
        if (
            payment.status == PaymentStatus.PROCESSING.value
            and target == PaymentStatus.PENDING
        ):
            return UNCHANGED

        if not can_transition(payment.status, target.value):
            self._flag(
                session,
                payment,
                transaction,
                "status_regression",
                f"{payment.status} -> {target.value} refused",
            )
            return FLAGGED

        now = self.clock()
        previous = payment.status
        payment.status = target.value
        payment.updated_at = now
        if target == PaymentStatus.COMPLETED:
            payment.paid_at = transaction.settled_at or now
            payment.transaction_id = (
                transaction.reference
                or payment.transaction_id
                or f"PAYOS_{payment.order_code}"
            )
        else:
            payment.paid_at = None

        if payment.patient_id is None:
            link = resolve_patient_link(session, payment)
            if link is not None:
                payment.patient_id = link.patient_id
                payment.doctor_id = payment.doctor_id or link.doctor_id

        session.add(payment)
        logger.info(f" ✅ [Sync] {payment.order_code}: {previous} -> {payment.status}")
        return UPDATED

    def _flag(
        self,
        session: Session,
        payment: PaymentRecord,
        transaction: GatewayTransaction,
        reason: str,
        detail: str,
    ) -> None:
        existing = session.exec(
            select(PaymentReview).where(
                PaymentReview.order_code == payment.order_code,
                PaymentReview.reason == reason,
                PaymentReview.resolved == False,  # noqa: E712
            )
        ).first()
        if existing:
            return

        logger.warning(f" 🚩 [Review] {payment.order_code} flagged: {reason} ({detail})")
        session.add(
            PaymentReview(
                order_code=payment.order_code,
                reason=reason,
                local_status=payment.status,
                gateway_status=transaction.status,
                local_amount=payment.amount,
                gateway_amount=transaction.amount,
                detail=detail,
            )
        )

    def build_missing_record(self, transaction: GatewayTransaction) -> PaymentRecord:
        status = map_gateway_status(transaction.status)
        refs = parse_description_refs(transaction.description)
        now = self.clock()
        completed = status == PaymentStatus.COMPLETED
        return PaymentRecord(
            order_code=transaction.order_code,
            amount=transaction.amount,
            description=transaction.description,
            status=status.value,
            payment_method="payos",
            patient_id=refs.get("patient_id"),
            record_id=refs.get("record_id"),
            transaction_id=transaction.reference,
            payment_link_id=transaction.id,
            created_at=transaction.created_at or now,
            updated_at=now,
            paid_at=(transaction.settled_at or now) if completed else None,
        )

    # ------------------------------------------------------------------
    # recovery / check job
    # ------------------------------------------------------------------

    def check_window(self, hours: int) -> RecoveryReport:
        return self._reconcile_window(hours, recover=False)

    def recover_window(self, hours: int) -> RecoveryReport:
        return self._reconcile_window(hours, recover=True)

    def _reconcile_window(self, hours: int, recover: bool) -> RecoveryReport:
        if not 1 <= hours <= MAX_RECOVERY_HOURS:
            raise ValueError(f"hours must be between 1 and {MAX_RECOVERY_HOURS}")

        action = "recover" if recover else "check"
        logger.info(f"🔍 [Recovery] {action} for the last {hours} hours...")
        to_date = self.clock()
        from_date = to_date - timedelta(hours=hours)

        gateway_transactions = self._dedupe(
            self.gateway.list_payments(from_date, to_date)
        )
        codes = list(gateway_transactions)

        with Session(self.engine) as session:
            database_total = len(
                session.exec(
                    select(PaymentRecord.id).where(
                        PaymentRecord.created_at >= from_date,
                        PaymentRecord.created_at <= to_date,
                    )
                ).all()
            )
            known: Dict[str, str] = {}
            if codes:
                for payment in session.exec(
                    select(PaymentRecord).where(col(PaymentRecord.order_code).in_(codes))
                ).all():
                    known[payment.order_code] = payment.status

        missing = [tx for code, tx in gateway_transactions.items() if code not in known]
        mismatches = [
            StatusMismatch(
                orderCode=code,
                localStatus=known[code],
                gatewayStatus=map_gateway_status(tx.status).value,
                amount=tx.amount,
            )
            for code, tx in gateway_transactions.items()
            if code in known and known[code] != map_gateway_status(tx.status).value
        ]
        logger.info(
            f"📊 [Recovery] PayOS {len(gateway_transactions)}, database {database_total}: "
            f"{len(missing)} missing, {len(mismatches)} mismatched"
        )

        report = RecoveryReport(
            action=action,
            hours=hours,
            missing=[tx.model_dump(mode="json", by_alias=True) for tx in missing],
            statusMismatches=mismatches,
            summary=RecoverySummary(
                payosTotal=len(gateway_transactions),
                databaseTotal=database_total,
                missingCount=len(missing),
                mismatchCount=len(mismatches),
            ),
        )
        if recover:
            self._recover(report, missing, mismatches, gateway_transactions)
        return report

    @staticmethod
    def _dedupe(
        transactions: List[GatewayTransaction],
    ) -> Dict[str, GatewayTransaction]:
        by_code: Dict[str, GatewayTransaction] = {}
        for transaction in transactions:
            if transaction.order_code in by_code:
                logger.warning(
                    f" ⚠️ [Recovery] Duplicate order code {transaction.order_code} from PayOS"
                )
                continue
            by_code[transaction.order_code] = transaction
        return by_code

    def _recover(
        self,
        report: RecoveryReport,
        missing: List[GatewayTransaction],
        mismatches: List[StatusMismatch],
        gateway_transactions: Dict[str, GatewayTransaction],
    ) -> None:
        for transaction in missing:
            with Session(self.engine) as session:
                try:
                    session.add(self.build_missing_record(transaction))
                    session.commit()
                except Exception as e:
                    session.rollback()
                    logger.error(
                        f" ❌ [Recovery] Insert {transaction.order_code} failed: {e}"
                    )
                    continue
            report.recovered += 1
            logger.info(f" ✅ [Recovery] Recovered {transaction.order_code}")

        for mismatch in mismatches:
            with Session(self.engine) as session:
                try:
                    payment = session.exec(
                        select(PaymentRecord).where(
                            PaymentRecord.order_code == mismatch.orderCode
                        )
                    ).one()
                    outcome = self.apply_gateway_state(
                        session, payment, gateway_transactions[mismatch.orderCode]
                    )
                    session.commit()
                except Exception as e:
                    session.rollback()
                    logger.error(
                        f" ❌ [Recovery] Update {mismatch.orderCode} failed: {e}"
                    )
                    continue
            if outcome == UPDATED:
                report.updated += 1
            elif outcome == FLAGGED:
                report.flagged += 1

        logger.info(
            f"🎉 [Recovery] {report.recovered} recovered, {report.updated} updated, "
            f"{report.flagged} flagged"
        )

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------

    def handle_webhook(self, transaction: GatewayTransaction) -> str:
        try:
            return self._handle_webhook(transaction)
        except IntegrityError:
            # a duplicate delivery inserted the same order code first
            logger.info(f" ♻️ [Webhook] {transaction.order_code} already inserted, re-applying")
            return self._handle_webhook(transaction)

    def _handle_webhook(self, transaction: GatewayTransaction) -> str:
        with Session(self.engine) as session:
            payment = session.exec(
                select(PaymentRecord).where(
                    PaymentRecord.order_code == transaction.order_code
                )
            ).first()
            if payment is None:
                session.add(self.build_missing_record(transaction))
                outcome = RECOVERED
            else:
                outcome = self.apply_gateway_state(session, payment, transaction)
            session.commit()

        logger.info(f" 📩 [Webhook] {transaction.order_code}: {outcome}")
        return outcome
