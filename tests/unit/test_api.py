from contextlib import contextmanager
from typing import Any, Dict, Iterator

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlmodel import Session

from apps.api.main import (
    app,
    get_history_reader,
    get_history_reader_v2,
    get_reconciliation_service,
    get_repair_job,
)
from core.database import get_session
from core.security import (
    SUPABASE_JWT_AUDIENCE,
    SUPABASE_JWT_SECRET,
    SYNC_JOB_SECRET,
    calculate_payos_signature,
)
from domains.payment.gateway import GatewayError
from domains.payment.history import (
    BillingServiceHistoryBackend,
    DatabaseHistoryBackend,
    PaymentHistoryReader,
)
from domains.payment.model import Patient, Profile
from domains.payment.repair import PatientLinkRepairJob
from domains.payment.service import ReconciliationService
from tests.factories import FakeGateway, add_rows, fixed_clock, gateway_tx, get_payment, payment

ADMIN_HEADERS = {"Authorization": f"Bearer {SYNC_JOB_SECRET}"}


@contextmanager
def _free_lock(name: str) -> Iterator[bool]:
    yield True


def _token(sub: str, **claims: Any) -> Dict[str, str]:
    payload = {"sub": sub, "aud": SUPABASE_JWT_AUDIENCE, **claims}
    token = jwt.encode(payload, SUPABASE_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(engine, gateway: FakeGateway, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:  # type: ignore[no-untyped-def]
    def override_session() -> Iterator[Session]:
        with Session(engine) as session:
            yield session

    def failing_billing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    service = ReconciliationService(gateway=gateway, engine=engine, clock=fixed_clock)
    db_reader = PaymentHistoryReader(fallback=DatabaseHistoryBackend(engine))
    v2_reader = PaymentHistoryReader(
        fallback=DatabaseHistoryBackend(engine),
        primary=BillingServiceHistoryBackend(
            base_url="http://billing.test", transport=httpx.MockTransport(failing_billing)
        ),
    )

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_reconciliation_service] = lambda: service
    app.dependency_overrides[get_repair_job] = lambda: PatientLinkRepairJob(engine)
    app.dependency_overrides[get_history_reader] = lambda: db_reader
    app.dependency_overrides[get_history_reader_v2] = lambda: v2_reader
    monkeypatch.setattr("domains.payment.jobs.job_lock", _free_lock)

    yield TestClient(app)

    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


# ---------------------------------------------------------------
# admin jobs
# ---------------------------------------------------------------


def test_sync_job_requires_bearer_token(client: TestClient) -> None:
    assert client.post("/api/payment/sync-job").status_code == 401
    wrong = client.post("/api/payment/sync-job", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 403


def test_sync_job_updates_payments(client: TestClient, engine, gateway: FakeGateway) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, payment("1001"))
    gateway.transactions["1001"] = gateway_tx("1001")

    response = client.post("/api/payment/sync-job", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["total"] == 1
    assert body["data"]["updated"] == 1
    stored = get_payment(engine, "1001")
    assert stored is not None
    assert stored.status == "completed"


def test_sync_job_reports_skip_when_already_running(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    @contextmanager
    def held_lock(name: str) -> Iterator[bool]:
        yield False

    monkeypatch.setattr("domains.payment.jobs.job_lock", held_lock)

    response = client.post("/api/payment/sync-job", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["data"]["skipped"] is True


def test_sync_job_limits_run_to_requested_order_codes(client: TestClient, engine, gateway: FakeGateway) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, payment("1101"), payment("1102"))
    gateway.transactions["1101"] = gateway_tx("1101")
    gateway.transactions["1102"] = gateway_tx("1102")

    response = client.post(
        "/api/payment/sync-job", headers=ADMIN_HEADERS, json={"orderCodes": ["1101"]}
    )

    assert response.status_code == 200
    assert response.json()["data"]["total"] == 1
    assert gateway.calls == ["1101"]
    untouched = get_payment(engine, "1102")
    assert untouched is not None
    assert untouched.status == "pending"


def test_sync_job_rejects_order_codes_that_are_not_a_list(client: TestClient) -> None:
    response = client.post(
        "/api/payment/sync-job", headers=ADMIN_HEADERS, json={"orderCodes": "1101"}
    )

    assert response.status_code == 422


@pytest.mark.parametrize(
    "params",
    [{"action": "delete"}, {"hours": 0}, {"hours": 721}],
)
def test_recovery_rejects_bad_parameters(client: TestClient, params: Dict[str, Any]) -> None:
    response = client.get("/api/payment/recovery", params=params, headers=ADMIN_HEADERS)

    assert response.status_code == 400


def test_recovery_check_then_recover(client: TestClient, engine, gateway: FakeGateway) -> None:  # type: ignore[no-untyped-def]
    gateway.transactions["123"] = gateway_tx("123", amount=300000)

    check = client.get(
        "/api/payment/recovery", params={"action": "check", "hours": 24}, headers=ADMIN_HEADERS
    )
    assert check.status_code == 200
    assert check.json()["data"]["summary"]["missingCount"] == 1
    assert get_payment(engine, "123") is None

    recover = client.get(
        "/api/payment/recovery", params={"action": "recover", "hours": 24}, headers=ADMIN_HEADERS
    )
    assert recover.json()["data"]["recovered"] == 1
    stored = get_payment(engine, "123")
    assert stored is not None
    assert stored.status == "completed"


def test_recovery_gateway_outage_is_bad_gateway(client: TestClient, gateway: FakeGateway) -> None:
    def unavailable(from_date: Any, to_date: Any) -> Any:
        raise GatewayError("PayOS 503")

    gateway.list_payments = unavailable  # type: ignore[method-assign]

    response = client.get("/api/payment/recovery", headers=ADMIN_HEADERS)

    assert response.status_code == 502


def test_coverage_and_repair(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, Patient(patient_id="P-1"), payment("1", description="patient_id: P-1"))

    before = client.get("/api/payment/coverage", headers=ADMIN_HEADERS).json()["data"]
    repair = client.post(
        "/api/payment/patient-link-repair", params={"limit": 10}, headers=ADMIN_HEADERS
    ).json()["data"]
    after = client.get("/api/payment/coverage", headers=ADMIN_HEADERS).json()["data"]

    assert before["coverageRate"] == 0
    assert repair["recovered"] == 1
    assert after["coverageRate"] == 1.0


def test_reviews_lists_flagged_conflicts(client: TestClient, engine, gateway: FakeGateway) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, payment("1001", amount=300000))
    gateway.transactions["1001"] = gateway_tx("1001", amount=1000)
    client.post("/api/payment/sync-job", headers=ADMIN_HEADERS)

    reviews = client.get("/api/payment/reviews", headers=ADMIN_HEADERS).json()["data"]

    assert [(r["order_code"], r["reason"]) for r in reviews] == [("1001", "amount_mismatch")]


# ---------------------------------------------------------------
# webhook
# ---------------------------------------------------------------


def _webhook(order_code: int, amount: int = 300000) -> Dict[str, Any]:
    data = {
        "orderCode": order_code,
        "amount": amount,
        "description": "Thanh toan kham benh",
        "reference": "FT-WH",
        "transactionDateTime": "2026-10-18T10:05:00",
        "paymentLinkId": "link-wh",
        "code": "00",
        "desc": "success",
    }
    return {
        "code": "00",
        "desc": "success",
        "success": True,
        "data": data,
        "signature": calculate_payos_signature(data),
    }


def test_webhook_completes_existing_payment(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, payment("555"))

    response = client.post("/api/payment/webhook", json=_webhook(555))

    assert response.status_code == 200
    assert response.json()["action"] == "updated"
    stored = get_payment(engine, "555")
    assert stored is not None
    assert stored.status == "completed"
    assert stored.transaction_id == "FT-WH"


def test_webhook_inserts_unknown_payment(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    response = client.post("/api/payment/webhook", json=_webhook(556))

    assert response.json()["action"] == "recovered"
    stored = get_payment(engine, "556")
    assert stored is not None
    assert stored.payment_link_id == "link-wh"


def test_webhook_rejects_bad_signature(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    add_rows(engine, payment("557"))
    body = _webhook(557)
    body["data"]["amount"] = 1

    response = client.post("/api/payment/webhook", json=body)

    assert response.status_code == 403
    stored = get_payment(engine, "557")
    assert stored is not None
    assert stored.status == "pending"


# ---------------------------------------------------------------
# payment history
# ---------------------------------------------------------------


def _seed_people(engine) -> None:  # type: ignore[no-untyped-def]
    add_rows(
        engine,
        Profile(id="u-alice", role="patient", full_name="Alice"),
        Patient(patient_id="P-A", profile_id="u-alice"),
        Profile(id="u-bob", role="patient", full_name="Bob"),
        Patient(patient_id="P-B", profile_id="u-bob"),
        Profile(id="u-doc", role="doctor"),
        Profile(id="u-new", role="patient"),
        payment("1", patient_id="P-A", status="completed", transaction_id="FT1"),
        payment("2", patient_id="P-B", status="completed"),
    )


def test_history_requires_login(client: TestClient) -> None:
    assert client.get("/api/patient/payment-history").status_code == 401
    bad = client.get(
        "/api/patient/payment-history", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert bad.status_code == 401


def test_history_returns_only_own_payments(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    _seed_people(engine)

    response = client.get("/api/patient/payment-history", headers=_token("u-alice"))

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "direct-database"
    assert [p["order_code"] for p in body["data"]["payments"]] == ["1"]
    assert body["data"]["pagination"] == {"page": 1, "limit": 10, "total": 1, "totalPages": 1}
    assert body["data"]["summary"]["syncRate"] == 100
    assert body["data"]["patient"] == {"patient_id": "P-A", "full_name": "Alice"}


def test_history_rejects_other_roles(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    _seed_people(engine)

    response = client.get("/api/patient/payment-history", headers=_token("u-doc"))

    assert response.status_code == 403


def test_history_for_patient_without_record_is_empty(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    _seed_people(engine)

    response = client.get("/api/patient/payment-history", headers=_token("u-new"))

    assert response.status_code == 200
    assert response.json()["data"]["payments"] == []
    assert response.json()["source"] == "patient-not-found"


def test_history_rejects_invalid_filters(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    _seed_people(engine)

    response = client.get(
        "/api/patient/payment-history", params={"limit": 500}, headers=_token("u-alice")
    )

    assert response.status_code == 400


def test_history_v2_falls_back_to_database(client: TestClient, engine) -> None:  # type: ignore[no-untyped-def]
    _seed_people(engine)

    response = client.get(
        "/api/patient/payment-history-v2",
        params={"orderCode": "2"},
        headers=_token("u-bob"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "direct-database"
    assert [p["order_code"] for p in body["data"]["payments"]] == ["2"]
