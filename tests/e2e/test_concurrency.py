import asyncio
import logging
import os
import random
import time

import httpx
import pytest

from tests.e2e.test_signature import sign_webhook

API_URL = os.getenv("E2E_API_URL", "")
CONCURRENCY_LEVEL = 200  # 同一筆訂單同時打 200 發 webhook

logging.getLogger("httpx").setLevel(logging.WARNING)

pytestmark = pytest.mark.skipif(not API_URL, reason="E2E_API_URL is not set")


async def send_webhook(client: httpx.AsyncClient, order_code: int, index: int) -> bool:
    """
    發送單筆 webhook 的任務 (Task)
    """
    body = sign_webhook(
        {
            "orderCode": order_code,
            "amount": 300000,
            "description": f"stress {index}",
            "reference": f"FT{order_code}",
            "transactionDateTime": "2026-10-18T10:05:00",
            "code": "00",
            "desc": "success",
        }
    )

    try:
        start_time = time.time()
        resp = await client.post(f"{API_URL}/api/payment/webhook", json=body)
        duration = time.time() - start_time

        if resp.status_code == 200:
            print(f"✅ [Req {index}] {resp.json()['action']} ({duration:.2f}s)")
            return True
        print(f"❌ [Req {index}] Failed ({resp.status_code})")
        return False

    except Exception as e:
        print(f"💥 [Req {index}] Error: {e}")
        return False


async def fire(order_code: int) -> list:
    async with httpx.AsyncClient(timeout=10.0) as client:
        tasks = [send_webhook(client, order_code, i) for i in range(CONCURRENCY_LEVEL)]
        print("🔥 FIRE!")
        return await asyncio.gather(*tasks)


def test_duplicate_webhooks_settle_once() -> None:
    """
    同一筆訂單的 webhook 同時送達：全部都要 200，而且訂單最後是 completed
    """
    order_code = random.randint(10**11, 10**12)
    print(f"🚀 Sending {CONCURRENCY_LEVEL} concurrent webhooks for {order_code}...")
    start_total = time.time()

    results = asyncio.run(fire(order_code))

    total_time = time.time() - start_total
    success_count = sum(1 for r in results if r)
    print("-" * 40)
    print("📊 Report:")
    print(f"   Total Requests: {CONCURRENCY_LEVEL}")
    print(f"   Success:        {success_count}")
    print(f"   Total Time:     {total_time:.2f}s")
    print(f"   TPS (Approx):   {CONCURRENCY_LEVEL / total_time:.2f} req/s")
    print("-" * 40)

    assert success_count == CONCURRENCY_LEVEL
