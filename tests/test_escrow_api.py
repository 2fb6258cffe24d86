from __future__ import annotations

from conftest import as_tenant


def _escrow_payload(offer_id: str, amounts=(10000, 10000, 10000)) -> dict:
    return {
        "offer_id": offer_id,
        "total_amount": sum(amounts),
        "milestones": [{"description": f"Milestone {i}", "amount": a} for i, a in enumerate(amounts, start=1)],
    }


def _create_escrow(client, offer: dict, key: str = "idem_escrow_1", **kwargs) -> dict:
    resp = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"], **kwargs),
        headers=as_tenant("buyer_1", **{"Idempotency-Key": key}),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _complete(client, escrow_id: str, seq: int, tenant: str = "buyer_1", **kwargs):
    return client.post(
        f"/api/v1/escrows/{escrow_id}/milestones/{seq}/complete",
        headers=as_tenant(tenant),
        **kwargs,
    )


def test_buyer_creates_escrow_for_own_offer(client, offer):
    data = _create_escrow(client, offer)

    assert data["escrow_id"].startswith("esc_")
    assert data["status"] == "created"
    assert data["current_milestone_index"] == 1
    assert data["seller_id"] == "1"
    assert data["buyer_id"] == "1"
    assert data["client_secret"]
    assert [m["status"] for m in data["milestones"]] == ["pending", "pending", "pending"]

    offers = client.get("/api/v1/offers", headers=as_tenant("buyer_1")).json()["data"]["items"]
    assert offers[0]["status"] == "in_escrow"


def test_create_escrow_requires_idempotency_key(client, offer):
    resp = client.post("/api/v1/escrows", json=_escrow_payload(offer["id"]), headers=as_tenant("buyer_1"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "IDEMPOTENCY_MISSING"


def test_create_escrow_replays_same_key_without_second_authorization(client, offer, services):
    first = _create_escrow(client, offer, key="idem_replay")
    second = _create_escrow(client, offer, key="idem_replay")

    assert second["escrow_id"] == first["escrow_id"]
    assert services.payments.call_count("authorize") == 1

    conflict = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"], amounts=(15000, 15000)),
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_replay"}),
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"


def test_second_escrow_for_same_offer_is_rejected(client, offer):
    _create_escrow(client, offer, key="idem_a")
    resp = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"]),
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_b"}),
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "ESCROW_STATE_INVALID"


def test_only_the_offer_buyer_can_create_an_escrow(client, offer):
    as_seller = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"]),
        headers=as_tenant("seller_1", **{"Idempotency-Key": "idem_seller"}),
    )
    assert as_seller.status_code == 403
    assert as_seller.json()["error"]["code"] == "AUTH_FORBIDDEN"

    other_buyer = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"]),
        headers=as_tenant("buyer_2", **{"Idempotency-Key": "idem_other"}),
    )
    assert other_buyer.status_code == 404
    assert other_buyer.json()["error"]["code"] == "OFFER_NOT_FOUND"


def test_create_escrow_rejects_invalid_plans(client, offer, services):
    wrong_total = client.post(
        "/api/v1/escrows",
        json=_escrow_payload(offer["id"], amounts=(10000, 10000)),
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_total"}),
    )
    assert wrong_total.status_code == 400
    assert wrong_total.json()["error"]["code"] == "ESCROW_VALIDATION_FAILED"
    assert wrong_total.json()["error"]["details"]["offer_amount"] == 30000

    bad_sum = _escrow_payload(offer["id"])
    bad_sum["milestones"][2]["amount"] = 5000
    resp = client.post(
        "/api/v1/escrows",
        json=bad_sum,
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_sum"}),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == {"milestones_total": 25000, "total_amount": 30000}

    empty = _escrow_payload(offer["id"])
    empty["milestones"] = []
    resp = client.post(
        "/api/v1/escrows",
        json=empty,
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_empty"}),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert services.payments.call_count("authorize") == 0


def test_platform_fee_is_set_by_the_platform_not_the_buyer(client, offer, services):
    payload = _escrow_payload(offer["id"])
    payload["platform_fee_amount"] = 0
    resp = client.post(
        "/api/v1/escrows",
        json=payload,
        headers=as_tenant("buyer_1", **{"Idempotency-Key": "idem_fee"}),
    )
    assert resp.status_code == 201
    escrow_id = resp.json()["data"]["escrow_id"]
    assert resp.json()["data"]["platform_fee_amount"] == 2400

    released = _complete(client, escrow_id, 1)
    assert released.json()["data"]["fee_amount"] == 800
    assert released.json()["data"]["released_amount"] == 9200
    assert services.payments.transfers(resp.json()["data"]["payment_authorization_id"])[0]["amount"] == 9200


def test_milestones_release_in_order_end_to_end(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]

    first = _complete(client, escrow_id, 1)
    assert first.status_code == 200
    assert first.json()["data"]["released_amount"] == 9200
    assert first.json()["data"]["fee_amount"] == 800
    assert first.json()["data"]["next_milestone"] == 2

    skipped = _complete(client, escrow_id, 3)
    assert skipped.status_code == 409
    assert skipped.json()["error"]["code"] == "ESCROW_MILESTONE_OUT_OF_SEQUENCE"
    assert skipped.json()["error"]["details"] == {"expected_milestone": 2, "received_milestone": 3}

    assert _complete(client, escrow_id, 2).status_code == 200
    last = _complete(client, escrow_id, 3, json={"deliverables": ["handover.zip"]})
    assert last.status_code == 200
    assert last.json()["data"]["escrow_status"] == "completed"
    assert last.json()["data"]["next_milestone"] is None

    view = client.get(f"/api/v1/escrows/{escrow_id}", headers=as_tenant("seller_1")).json()["data"]
    assert view["status"] == "completed"
    assert view["fee_collected_amount"] == 2400
    assert [m["released_amount"] for m in view["milestones"]] == [9200, 9200, 9200]
    assert view["milestones"][2]["deliverables"] == ["handover.zip"]
    assert view["milestones"][0]["completed_by"] == "buyer_1"
    assert [e["kind"] for e in view["ledger"]] == ["authorization", "release", "release", "release"]

    offers = client.get("/api/v1/offers", headers=as_tenant("buyer_1")).json()["data"]["items"]
    assert offers[0]["status"] == "completed"


def test_seller_cannot_release_funds(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]
    resp = _complete(client, escrow_id, 1, tenant="seller_1")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_escrow_is_hidden_from_outsiders(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]

    for tenant in ("buyer_1", "seller_1", "operator_ops"):
        resp = client.get(f"/api/v1/escrows/{escrow_id}", headers=as_tenant(tenant))
        assert resp.status_code == 200, tenant

    outsider = client.get(f"/api/v1/escrows/{escrow_id}", headers=as_tenant("buyer_2"))
    assert outsider.status_code == 404
    assert outsider.json()["error"]["code"] == "ESCROW_NOT_FOUND"
    assert client.get(f"/api/v1/escrows/{escrow_id}", headers=as_tenant("seller_2")).status_code == 404

    anonymous = client.get(f"/api/v1/escrows/{escrow_id}")
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "TENANT_REQUIRED"

    assert _complete(client, escrow_id, 1, tenant="buyer_2").status_code == 404


def test_offer_escrow_lookup(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]
    resp = client.get(f"/api/v1/offers/{offer['id']}/escrow", headers=as_tenant("seller_1"))
    assert resp.status_code == 200
    assert resp.json()["data"]["escrow_id"] == escrow_id
    assert client.get(f"/api/v1/offers/{offer['id']}/escrow", headers=as_tenant("buyer_2")).status_code == 404


def test_dispute_freezes_escrow_until_operator_resumes(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]

    dispute = client.post(
        f"/api/v1/escrows/{escrow_id}/milestones/1/dispute",
        json={"dispute_type": "payment", "description": "buyer unreachable"},
        headers=as_tenant("seller_1"),
    )
    assert dispute.status_code == 201
    assert dispute.json()["data"]["status"] == "open"
    assert dispute.json()["data"]["initiating_party"] == "seller_1"
    dispute_id = dispute.json()["data"]["dispute_id"]

    frozen = _complete(client, escrow_id, 1)
    assert frozen.status_code == 409
    assert frozen.json()["error"]["code"] == "ESCROW_STATE_INVALID"

    resolved = client.post(
        f"/api/v1/internal/escrows/{escrow_id}/disputes/{dispute_id}/resolve",
        json={"outcome": "resume", "resolution": "buyer replied"},
        headers=as_tenant("operator_ops"),
    )
    assert resolved.status_code == 200
    assert resolved.json()["data"]["status"] == "in_progress"
    assert resolved.json()["data"]["disputes"][0]["status"] == "resolved"

    assert _complete(client, escrow_id, 1).status_code == 200


def test_dispute_rejects_unknown_type(client, offer):
    escrow_id = _create_escrow(client, offer)["escrow_id"]
    resp = client.post(
        f"/api/v1/escrows/{escrow_id}/milestones/1/dispute",
        json={"dispute_type": "vibes", "description": "x"},
        headers=as_tenant("buyer_1"),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_buyer_cancels_escrow_and_offer_is_released(client, offer, services):
    data = _create_escrow(client, offer)
    escrow_id = data["escrow_id"]

    denied = client.post(f"/api/v1/escrows/{escrow_id}/cancel", json={"reason": "no"}, headers=as_tenant("seller_1"))
    assert denied.status_code == 403

    resp = client.post(
        f"/api/v1/escrows/{escrow_id}/cancel",
        json={"reason": "project abandoned"},
        headers=as_tenant("buyer_1"),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"
    assert services.payments.is_voided(data["payment_authorization_id"])

    offers = client.get("/api/v1/offers", headers=as_tenant("seller_1")).json()["data"]["items"]
    assert offers[0]["status"] == "escrow_cancelled"


def test_transfer_failure_is_retryable_and_changes_nothing(client, offer, services):
    escrow_id = _create_escrow(client, offer)["escrow_id"]
    services.payments.fail_next("capture_or_transfer")

    failed = _complete(client, escrow_id, 1)
    assert failed.status_code == 502
    assert failed.json()["error"]["code"] == "PAYMENT_ADAPTER_FAILED"
    assert failed.json()["error"]["retryable"] is True

    view = client.get(f"/api/v1/escrows/{escrow_id}", headers=as_tenant("buyer_1")).json()["data"]
    assert view["current_milestone_index"] == 1
    assert view["milestones"][0]["status"] == "pending"

    assert _complete(client, escrow_id, 1).status_code == 200
