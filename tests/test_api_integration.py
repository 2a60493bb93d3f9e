"""
Integration tests for the Loan Pricing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient

from loan_pricing.api import create_app
from loan_pricing.api.deps import PricingSystem
from loan_pricing.async_storage import AsyncInMemoryStorage
from loan_pricing.clock import FixedClock
from loan_pricing.config import LoanPricingConfig


HEADERS = {"X-User-Id": "USER-1", "X-User-Name": "Pat Analyst"}


@pytest.fixture
def client():
    """Test client over a fresh in-memory system with a fixed clock"""
    system = PricingSystem(
        storage=AsyncInMemoryStorage(),
        clock=FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)),
        config=LoanPricingConfig(storage_type="memory", snapshot_auto_prune=False),
    )
    with TestClient(create_app(system)) as client:
        yield client


def loan_payload(loan_number="LN-100", amounts=("60000.00", "40000.00"), currency="USD",
                 customer_id="CUST-1"):
    return {
        "customer_id": customer_id,
        "loan_number": loan_number,
        "borrower_name": "Borrower Ltd",
        "currency": currency,
        "start_date": "2024-01-01",
        "maturity_date": "2024-04-01",
        "pricing": {"base_rate": "0.05", "spread": "0.02"},
        "invoices": [
            {"invoice_number": f"{loan_number}-INV-{i}", "debtor_name": "Acme Debtor",
             "amount": amount, "due_date": "2024-04-01"}
            for i, amount in enumerate(amounts, start=1)
        ],
    }


def create_loan(client, **kwargs):
    r = client.post("/loans", json=loan_payload(**kwargs), headers=HEADERS)
    assert r.status_code == 201
    return r.json()


def create_fee_config(client, code="ARR", amount="500.00"):
    r = client.post("/fee-configs", json={
        "code": code,
        "name": "Arrangement",
        "fee_type": "arrangement",
        "calculation_type": "flat",
        "default_flat_amount": amount,
    })
    assert r.status_code == 201
    return r.json()


def lock(client, loan_id):
    r = client.put(f"/loans/{loan_id}", json={"pricing_status": "locked"}, headers=HEADERS)
    assert r.status_code == 200


class TestHealthEndpoints:
    """Test health and audit verification"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "service": "loan_pricing_api", "version": "1.0.0"}

    def test_audit_verify(self, client):
        create_loan(client)
        r = client.get("/audit/verify")
        assert r.status_code == 200
        data = r.json()
        assert data["valid"] is True
        assert data["total_events"] == 1


class TestLoanFlow:
    """End-to-end loan management tests"""

    def test_create_loan(self, client):
        data = create_loan(client)
        assert data["total_amount"] == "100000.00"
        assert data["pricing"]["effective_rate"] == "0.0700"
        assert data["interest_amount"] == "1769.44"
        assert data["net_proceeds"] == "98230.56"
        assert data["status"] == "draft"
        assert data["created_by"] == "USER-1"

    def test_identity_headers_required(self, client):
        r = client.post("/loans", json=loan_payload())
        assert r.status_code == 400
        r = client.post("/loans", json=loan_payload(), headers={"X-User-Id": "USER-1"})
        assert r.status_code == 400

    def test_invalid_input(self, client):
        payload = loan_payload()
        payload["invoices"][0]["amount"] = "lots"
        assert client.post("/loans", json=payload, headers=HEADERS).status_code == 400

        payload = loan_payload()
        payload["maturity_date"] = "2023-12-01"
        assert client.post("/loans", json=payload, headers=HEADERS).status_code == 400

    def test_get_and_list(self, client):
        loan = create_loan(client)
        create_loan(client, loan_number="LN-200", customer_id="CUST-2")

        r = client.get(f"/loans/{loan['id']}")
        assert r.status_code == 200
        assert r.json()["loan_number"] == "LN-100"

        r = client.get("/loans", params={"customer_id": "CUST-2"})
        assert r.json()["total_count"] == 1
        assert client.get("/loans", params={"status": "bogus"}).status_code == 400

    def test_missing_loan(self, client):
        assert client.get("/loans/missing").status_code == 404
        r = client.put("/loans/missing", json={"spread": "0.03"}, headers=HEADERS)
        assert r.status_code == 404

    def test_update_and_lock(self, client):
        loan = create_loan(client)
        r = client.put(f"/loans/{loan['id']}", json={"spread": "0.03"}, headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["interest_amount"] == "2022.22"

        lock(client, loan["id"])
        r = client.put(f"/loans/{loan['id']}", json={"spread": "0.04"}, headers=HEADERS)
        assert r.status_code == 409
        r = client.put(f"/loans/{loan['id']}", json={"status": "approved"}, headers=HEADERS)
        assert r.status_code == 200

    def test_preview_pricing(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/preview-pricing", json={"spread": "0.03"})
        assert r.status_code == 200
        assert r.json()["effective_rate"] == "0.0800"
        assert client.get(f"/loans/{loan['id']}").json()["pricing"]["spread"] == "0.02"

    def test_preview_with_fee_changes(self, client):
        config = create_fee_config(client)
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/preview", json={
            "patch": {"spread": "0.03"},
            "fee_changes": {"adds": [config["id"]]},
        })
        assert r.status_code == 200
        data = r.json()
        assert data["total_fees"] == "500.00"
        assert data["interest_amount"] == "2022.22"

    def test_loan_audit_history(self, client):
        loan = create_loan(client)
        client.put(f"/loans/{loan['id']}", json={"spread": "0.03"}, headers=HEADERS)

        r = client.get(f"/loans/{loan['id']}/audit", params={"field_name": "pricing.spread"})
        assert r.status_code == 200
        events = r.json()["events"]
        assert [(e["old_value"], e["new_value"]) for e in events] == [("0.02", "0.03")]
        assert client.get("/loans/missing/audit").status_code == 404


class TestFeeFlow:
    """Fee templates and loan fees"""

    def test_fee_lifecycle(self, client):
        config = create_fee_config(client)
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/fees", json={"fee_config_id": config["id"]}, headers=HEADERS)
        assert r.status_code == 201
        fee = r.json()["fees"][0]
        assert r.json()["total_fees"] == "500.00"

        r = client.put(f"/loans/{loan['id']}/fees/{fee['id']}", json={"flat_amount": "750.00"},
                       headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["total_fees"] == "750.00"

        r = client.put(f"/loans/{loan['id']}/fees/{fee['id']}", json={"is_paid": True}, headers=HEADERS)
        assert r.status_code == 200
        r = client.delete(f"/loans/{loan['id']}/fees/{fee['id']}", headers=HEADERS)
        assert r.status_code == 409

    def test_fee_config_endpoints(self, client):
        config = create_fee_config(client)
        create_fee_config(client, code="LATE", amount="50.00")

        assert client.get(f"/fee-configs/{config['id']}").json()["code"] == "ARR"
        assert client.get("/fee-configs/missing").status_code == 404

        r = client.post(f"/fee-configs/{config['id']}/deactivate")
        assert r.json()["is_active"] is False
        r = client.get("/fee-configs", params={"active_only": True})
        assert [c["code"] for c in r.json()["fee_configs"]] == ["LATE"]

    def test_fee_config_update(self, client):
        config = create_fee_config(client)
        create_fee_config(client, code="LATE", amount="50.00")

        r = client.put(f"/fee-configs/{config['id']}", json={"default_flat_amount": "750.00"})
        assert r.status_code == 200
        assert r.json()["default_flat_amount"] == "750.00"
        assert r.json()["name"] == "Arrangement"

        assert client.put(f"/fee-configs/{config['id']}", json={"code": "LATE"}).status_code == 400
        assert client.put(f"/fee-configs/{config['id']}", json={"calculation_type": "tiered"}).status_code == 400
        assert client.put(f"/fee-configs/{config['id']}", json={"name": None}).status_code == 400
        assert client.put("/fee-configs/missing", json={"name": "X"}).status_code == 404

    def test_invalid_tiers_rejected(self, client):
        r = client.post("/fee-configs", json={
            "code": "TIER",
            "name": "Tiered",
            "fee_type": "facility",
            "calculation_type": "tiered",
            "default_tiers": [
                {"min_amount": "0", "max_amount": "100", "rate": "0.01"},
                {"min_amount": "150", "max_amount": None, "rate": "0.01"},
            ],
        })
        assert r.status_code == 400


class TestInvoiceFlow:
    """Invoice edits, moves and splits"""

    def test_add_update_remove(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/invoices", json={
            "invoice_number": "INV-X", "debtor_name": "Other", "amount": "5000.00", "due_date": "2024-03-01"
        }, headers=HEADERS)
        assert r.status_code == 201
        assert r.json()["total_amount"] == "105000.00"

        invoice_id = r.json()["invoices"][0]["id"]
        r = client.put(f"/loans/{loan['id']}/invoices/{invoice_id}", json={"status": "verified"},
                       headers=HEADERS)
        assert r.json()["invoices"][0]["status"] == "verified"

        r = client.delete(f"/loans/{loan['id']}/invoices/{invoice_id}", headers=HEADERS)
        assert r.json()["total_amount"] == "45000.00"

    def test_move_invoice(self, client):
        source = create_loan(client, loan_number="SRC")
        target = create_loan(client, loan_number="TGT", amounts=("10000.00",))
        invoice_id = source["invoices"][0]["id"]

        r = client.post(f"/loans/{source['id']}/invoices/{invoice_id}/move",
                        json={"target_loan_id": target["id"]}, headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["source"]["total_amount"] == "40000.00"
        assert r.json()["target"]["total_amount"] == "70000.00"

    def test_move_between_currencies_rejected(self, client):
        source = create_loan(client, loan_number="SRC")
        target = create_loan(client, loan_number="EUR", currency="EUR", amounts=("10.00",))
        r = client.post(f"/loans/{source['id']}/invoices/{source['invoices'][0]['id']}/move",
                        json={"target_loan_id": target["id"]}, headers=HEADERS)
        assert r.status_code == 400

    def test_split(self, client):
        loan = create_loan(client)
        partitions = [{"invoice_ids": [invoice["id"]]} for invoice in loan["invoices"]]

        r = client.post(f"/loans/{loan['id']}/split", json={"partitions": partitions}, headers=HEADERS)
        assert r.status_code == 201
        data = r.json()
        assert [c["total_amount"] for c in data["loans"]] == ["60000.00", "40000.00"]
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "funded"

    def test_split_with_bad_partition(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/split",
                        json={"partitions": [{"invoice_ids": [loan["invoices"][0]["id"]]}]}, headers=HEADERS)
        assert r.status_code == 400


class TestBatchFlow:
    """Batch update and preview"""

    def test_all_succeed(self, client):
        loan = create_loan(client)
        r = client.put("/loans/batch", json={"items": [{"loan_id": loan["id"], "update": {"spread": "0.03"}}]},
                       headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["succeeded"] == 1

    def test_partial_failure_is_multi_status(self, client):
        ok = create_loan(client, loan_number="LN-1")
        locked = create_loan(client, loan_number="LN-2")
        lock(client, locked["id"])

        r = client.put("/loans/batch", json={"items": [
            {"loan_id": ok["id"], "update": {"spread": "0.03"}},
            {"loan_id": locked["id"], "update": {"spread": "0.03"}},
            {"loan_id": "missing", "update": {"spread": "0.03"}},
        ]}, headers=HEADERS)
        assert r.status_code == 207
        data = r.json()
        assert (data["succeeded"], data["failed"]) == (1, 2)
        assert [i["error_type"] for i in data["results"]] == [None, "LockedLoanError", "NotFoundError"]

    def test_unconvertible_item_fails_alone(self, client):
        ok = create_loan(client, loan_number="LN-1")
        other = create_loan(client, loan_number="LN-2")
        third = create_loan(client, loan_number="LN-3")

        r = client.put("/loans/batch", json={"items": [
            {"loan_id": ok["id"], "update": {"spread": "0.03"}},
            {"loan_id": other["id"], "update": {"status": "bogus"}},
            {"loan_id": third["id"], "update": {"spread": "abc", "maturity_date": "2024-13-45"}},
        ]}, headers=HEADERS)
        assert r.status_code == 207
        data = r.json()
        assert (data["succeeded"], data["failed"]) == (1, 2)
        assert [i["error_type"] for i in data["results"]] == [None, "ValidationError", "ValidationError"]
        assert client.get(f"/loans/{ok['id']}").json()["pricing"]["spread"] == "0.03"
        assert client.get(f"/loans/{other['id']}").json()["status"] == "draft"

    def test_duplicate_ids_rejected(self, client):
        loan = create_loan(client)
        items = [{"loan_id": loan["id"]}, {"loan_id": loan["id"]}]
        assert client.put("/loans/batch", json={"items": items}, headers=HEADERS).status_code == 400

    def test_batch_preview(self, client):
        loan = create_loan(client)
        r = client.post("/loans/batch-preview-pricing", json={"items": [
            {"loan_id": loan["id"], "patch": {"spread": "0.03"}},
        ]})
        assert r.status_code == 200
        assert r.json()["results"][0]["preview"]["effective_rate"] == "0.0800"

    def test_batch_preview_bad_item_reported_per_item(self, client):
        loan = create_loan(client, loan_number="LN-1")
        other = create_loan(client, loan_number="LN-2")
        r = client.post("/loans/batch-preview-pricing", json={"items": [
            {"loan_id": loan["id"], "patch": {"spread": "0.03"}},
            {"loan_id": other["id"], "patch": {"day_count_convention": "bogus"}},
        ]})
        assert r.status_code == 200
        results = r.json()["results"]
        assert results[0]["success"] and not results[1]["success"]
        assert results[1]["error_type"] == "ValidationError"


class TestCustomerSummary:
    """Live portfolio totals without taking a snapshot"""

    def test_summary_by_currency(self, client):
        create_loan(client, loan_number="LN-1")
        create_loan(client, loan_number="LN-2", amounts=("50000.00",), currency="EUR")
        create_loan(client, loan_number="LN-3", customer_id="CUST-2")

        r = client.get("/loans/summary", params={"customer_id": "CUST-1"})
        assert r.status_code == 200
        summary = r.json()["summary"]
        assert sorted(summary) == ["EUR", "USD"]
        assert summary["USD"]["loan_count"] == 1
        assert summary["USD"]["total_amount"] == "100000.00"
        assert summary["USD"]["avg_rate"] == "0.07000000"
        assert summary["EUR"]["total_amount"] == "50000.00"

    def test_customer_without_loans(self, client):
        r = client.get("/loans/summary", params={"customer_id": "NOBODY"})
        assert r.status_code == 200
        assert r.json()["summary"] == {}
        assert client.get("/loans/summary", params={"customer_id": ""}).status_code == 400


class TestSnapshotFlow:
    """Snapshot timeline and playback"""

    def test_create_list_and_playback(self, client):
        loan = create_loan(client)
        first = client.post("/snapshots", json={"customer_id": "CUST-1", "description": "Opening"},
                            headers=HEADERS)
        assert first.status_code == 201
        assert first.json()["sequence"] == 1
        assert first.json()["delta"] is None

        client.put(f"/loans/{loan['id']}", json={"spread": "0.03"}, headers=HEADERS)
        second = client.post("/snapshots", json={"customer_id": "CUST-1"}, headers=HEADERS).json()
        assert second["delta"]["USD"]["avg_rate_change_bps"] == "100.00000000"
        assert [r["field"] for r in second["changes"]["rates"]] == ["spread"]

        r = client.get("/snapshots", params={"customer_id": "CUST-1"})
        assert [s["sequence"] for s in r.json()["snapshots"]] == [2, 1]
        assert r.json()["total_count"] == 2

        detail = client.get(f"/snapshots/{first.json()['id']}").json()
        assert detail["loans"][0]["pricing"]["spread"] == "0.02"
        assert client.get("/snapshots/missing").status_code == 404

    def test_prune(self, client):
        create_loan(client)
        for _ in range(3):
            client.post("/snapshots", json={"customer_id": "CUST-1"}, headers=HEADERS)

        r = client.post("/snapshots/prune", params={"customer_id": "CUST-1", "retention_limit": 1})
        assert r.json() == {"customer_id": "CUST-1", "deleted": 2}
        r = client.post("/snapshots/prune", params={"customer_id": "CUST-1", "retention_limit": 0})
        assert r.status_code == 400

    def test_foreign_loan_rejected(self, client):
        other = create_loan(client, customer_id="CUST-2")
        r = client.post("/snapshots", json={"customer_id": "CUST-1", "loan_ids": [other["id"]]},
                        headers=HEADERS)
        assert r.status_code == 400


class TestFxFlow:
    """FX rates and resolution"""

    def test_direct_inverse_and_fallback(self, client):
        r = client.post("/fx-rates", json={
            "from_currency": "EUR", "to_currency": "USD", "rate": "1.25", "effective_date": "2023-12-01"
        })
        assert r.status_code == 201

        direct = client.get("/fx-rates/resolve", params={"from_currency": "EUR", "to_currency": "USD"}).json()
        assert (direct["rate"], direct["method"], direct["degraded"]) == ("1.25", "direct", False)
        assert direct["as_of"] == "2024-01-01"

        inverse = client.get("/fx-rates/resolve", params={"from_currency": "USD", "to_currency": "EUR"}).json()
        assert (inverse["rate"], inverse["method"]) == ("0.8", "inverse")

        fallback = client.get("/fx-rates/resolve", params={"from_currency": "GBP", "to_currency": "USD"}).json()
        assert (fallback["rate"], fallback["degraded"]) == ("1", True)

    def test_rate_effective_dates(self, client):
        client.post("/fx-rates", json={
            "from_currency": "EUR", "to_currency": "USD", "rate": "1.10", "effective_date": "2024-02-01"
        })
        r = client.get("/fx-rates/resolve",
                       params={"from_currency": "EUR", "to_currency": "USD", "as_of": "2024-01-15"})
        assert r.json()["method"] == "fallback"
        r = client.get("/fx-rates", params={"from_currency": "EUR", "to_currency": "USD"})
        assert len(r.json()["rates"]) == 1

    def test_invalid_rate(self, client):
        r = client.post("/fx-rates", json={
            "from_currency": "EUR", "to_currency": "USD", "rate": "-1", "effective_date": "2024-01-01"
        })
        assert r.status_code == 400
