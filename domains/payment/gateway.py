import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from domains.payment.model import PaymentStatus
from domains.payment.schemas import GatewayTransaction

logger = logging.getLogger(__name__)

PAYOS_API_URL = os.getenv("PAYOS_API_URL", "https://api-merchant.payos.vn")
PAYOS_CLIENT_ID = os.getenv("PAYOS_CLIENT_ID", "")
PAYOS_API_KEY = os.getenv("PAYOS_API_KEY", "")
PAYOS_TIMEOUT_SECONDS = float(os.getenv("PAYOS_TIMEOUT_SECONDS", "10"))
PAYOS_PAGE_SIZE = int(os.getenv("PAYOS_PAGE_SIZE", "50"))

_STATUS_MAP = {
    "PAID": PaymentStatus.COMPLETED,
    "CANCELLED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
    "PROCESSING": PaymentStatus.PROCESSING,
}


class GatewayError(Exception):
    """PayOS could not be reached or refused the request."""


def map_gateway_status(status: str) -> PaymentStatus:
    return _STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING)


class PayOSClient:
    def __init__(
        self,
        base_url: str = PAYOS_API_URL,
        client_id: str = PAYOS_CLIENT_ID,
        api_key: str = PAYOS_API_KEY,
        timeout: float = PAYOS_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "x-client-id": client_id,
                "x-api-key": api_key,
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise GatewayError(f"PayOS request {path} failed: {e}") from e

        if response.status_code != 200:
            raise GatewayError(f"PayOS {path} responded {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"PayOS {path} returned invalid JSON") from e

        if str(payload.get("code")) != "00" or payload.get("data") is None:
            raise GatewayError(f"PayOS {path} error: {payload.get('desc')}")
        return payload["data"]

    def get_payment(self, order_code: str) -> GatewayTransaction:
        data = self._get(f"/v2/payment-requests/{order_code}")
        try:
            return GatewayTransaction.model_validate(data)
        except ValidationError as e:
            raise GatewayError(f"Unexpected PayOS payload for {order_code}") from e

    def list_payments(
        self, from_date: datetime, to_date: datetime
    ) -> List[GatewayTransaction]:
        """All payment requests created in [from_date, to_date], every page."""
        transactions: List[GatewayTransaction] = []
        page = 1
        while True:
            data = self._get(
                "/v2/payment-requests",
                params={
                    "page": page,
                    "pageSize": PAYOS_PAGE_SIZE,
                    "fromDate": from_date.isoformat(),
                    "toDate": to_date.isoformat(),
                },
            )
            items = data.get("items") or []
            for item in items:
                try:
                    transactions.append(GatewayTransaction.model_validate(item))
                except ValidationError:
                    logger.warning(f" ⚠️ [PayOS] Skipping malformed item: {item}")
            if len(items) < PAYOS_PAGE_SIZE:
                break
            page += 1

        logger.info(
            f" 📥 [PayOS] {len(transactions)} transactions between "
            f"{from_date.isoformat()} and {to_date.isoformat()}"
        )
        return transactions
