from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Engine
from sqlmodel import Session, select

from domains.payment.gateway import GatewayError
from domains.payment.model import PaymentRecord
from domains.payment.schemas import GatewayTransaction

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def gateway_tx(
    order_code: str, amount: int = 300000, status: str = "PAID", **extra: Any
) -> GatewayTransaction:
    data: Dict[str, Any] = {
        "orderCode": order_code,
        "amount": amount,
        "status": status,
        "createdAt": "2026-10-18T10:00:00",
    }
    if status == "PAID":
        data["transactions"] = [
            {"reference": f"FT{order_code}", "transactionDateTime": "2026-10-18T10:05:00"}
        ]
    data.update(extra)
    return GatewayTransaction.model_validate(data)


class FakeGateway:
    """Stands in for PayOSClient."""

    def __init__(
        self,
        transactions: Iterable[GatewayTransaction] = (),
        failing: Iterable[str] = (),
    ) -> None:
        self.transactions = {tx.order_code: tx for tx in transactions}
        self.failing = set(failing)
        self.calls: List[str] = []

    def get_payment(self, order_code: str) -> GatewayTransaction:
        self.calls.append(order_code)
        if order_code in self.failing:
            raise GatewayError(f"PayOS timeout for {order_code}")
        if order_code not in self.transactions:
            raise GatewayError(f"PayOS has no {order_code}")
        return self.transactions[order_code]

    def list_payments(self, from_date: datetime, to_date: datetime) -> List[GatewayTransaction]:
        return list(self.transactions.values())


def add_rows(engine: Engine, *rows: Any) -> None:
    with Session(engine) as session:
        for row in rows:
            session.add(row)
        session.commit()


def get_payment(engine: Engine, order_code: str) -> Optional[PaymentRecord]:
    with Session(engine) as session:
        return session.exec(
            select(PaymentRecord).where(PaymentRecord.order_code == order_code)
        ).first()


def payment(order_code: str, **fields: Any) -> PaymentRecord:
    values: Dict[str, Any] = {
        "order_code": order_code,
        "amount": 300000,
        "status": "pending",
        "created_at": datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc),
    }
    values.update(fields)
    return PaymentRecord(**values)
