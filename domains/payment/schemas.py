from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC; a timestamp without an offset is taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GatewayTransfer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reference: Optional[str] = None
    amount: Optional[int] = None
    transaction_datetime: Optional[datetime] = Field(
        default=None, alias="transactionDateTime"
    )

    @field_validator("transaction_datetime")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value)


class GatewayTransaction(BaseModel):
    """A payment request as PayOS reports it."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    order_code: str = Field(alias="orderCode")
    amount: int
    status: str
    description: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")
    transactions: List[GatewayTransfer] = Field(default_factory=list)

    @field_validator("order_code", mode="before")
    @classmethod
    def _order_code_as_str(cls, value: Any) -> str:
        return str(value)

    @field_validator("created_at", "paid_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value)

    @property
    def reference(self) -> Optional[str]:
        return self.transactions[0].reference if self.transactions else None

    @property
    def settled_at(self) -> Optional[datetime]:
        if self.paid_at:
            return self.paid_at
        if self.transactions:
            return self.transactions[0].transaction_datetime
        return None


class WebhookData(BaseModel):
    """`data` of a PayOS webhook; `code == "00"` means the transfer settled."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_code: str = Field(alias="orderCode")
    amount: int
    description: Optional[str] = None
    reference: Optional[str] = None
    transaction_datetime: Optional[datetime] = Field(
        default=None, alias="transactionDateTime"
    )
    payment_link_id: Optional[str] = Field(default=None, alias="paymentLinkId")
    code: Optional[str] = None
    status: Optional[str] = None

    @field_validator("order_code", mode="before")
    @classmethod
    def _order_code_as_str(cls, value: Any) -> str:
        return str(value)

    def to_transaction(self) -> GatewayTransaction:
        status = self.status or ("PAID" if self.code == "00" else "PENDING")
        return GatewayTransaction(
            id=self.payment_link_id,
            order_code=self.order_code,
            amount=self.amount,
            status=status,
            description=self.description,
            transactions=[
                GatewayTransfer(
                    reference=self.reference,
                    amount=self.amount,
                    transaction_datetime=self.transaction_datetime,
                )
            ],
        )


class WebhookEnvelope(BaseModel):
    code: Optional[str] = None
    desc: Optional[str] = None
    success: Optional[bool] = None
    data: WebhookData
    signature: str


class SyncRequest(BaseModel):
    """Body of POST /api/payment/sync-job. Without orderCodes the lookback window is synced."""

    orderCodes: Optional[List[str]] = None

    @field_validator("orderCodes", mode="before")
    @classmethod
    def _order_codes_as_str(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(code) if isinstance(code, int) else code for code in value]
        return value


class SyncResult(BaseModel):
    total: int = 0
    updated: int = 0
    failed: int = 0
    flagged: int = 0
    duration: int = 0  # ms
    skipped: bool = False


class StatusMismatch(BaseModel):
    orderCode: str
    localStatus: str
    gatewayStatus: str
    amount: int


class RecoverySummary(BaseModel):
    payosTotal: int
    databaseTotal: int
    missingCount: int
    mismatchCount: int


class RecoveryReport(BaseModel):
    action: str
    hours: int
    missing: List[Dict[str, Any]]
    statusMismatches: List[StatusMismatch]
    summary: RecoverySummary
    recovered: int = 0
    updated: int = 0
    flagged: int = 0


class RepairResult(BaseModel):
    jobRunId: str
    total: int
    recovered: int
    coverageBefore: float
    coverageAfter: float
    results: List[Dict[str, Any]]


class CoverageStats(BaseModel):
    total: int
    linked: int
    missing: int
    coverageRate: float


class HistoryFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    order_code: Optional[str] = None
    doctor_id: Optional[str] = None
    status: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class HistorySummary(BaseModel):
    totalPaid: int = 0
    totalTransactions: int = 0
    averageAmount: float = 0
    syncRate: float = 0


class HistoryPage(BaseModel):
    payments: List[Dict[str, Any]]
    pagination: Pagination
    summary: HistorySummary
    source: str
    patient: Optional[Dict[str, Any]] = None
