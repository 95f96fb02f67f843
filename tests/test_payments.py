import json
from types import SimpleNamespace

import pytest
import stripe
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

import main
from config import get_settings
from conftest import checkout_completed_event, stripe_signature
from errors import UpstreamError, ValidationError
from orders import OrderWorkflow
from payments import PaymentGateway, PaymentReconciler


@pytest.fixture
def pending_order(db, make_user, make_product):
    product = make_product(price=19.99)
    return OrderWorkflow(db).create_order(make_user().id, [{"product_id": product.id, "quantity": 2}], "addr")


def post_event(client, payload, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["Stripe-Signature"] = signature or stripe_signature(payload)
    return client.post("/stripe-webhook", content=payload, headers=headers)


def order_status(db, order):
    return db["order"].find_one({"_id": ObjectId(order.id)})["status"]


def test_signed_event_moves_order_to_processing_and_records_payment(client, db, pending_order):
    res = post_event(client, checkout_completed_event(pending_order.id))

    assert res.status_code == 200
    assert res.json() == {"received": True, "duplicate": False, "transitioned": True}
    assert order_status(db, pending_order) == "processing"
    payments = list(db["payment"].find({"order_id": pending_order.id}))
    assert len(payments) == 1
    assert payments[0]["status"] == "completed"
    assert payments[0]["transaction_id"] == "pi_123"
    assert payments[0]["amount"] == 39.98
    assert payments[0]["payment_method"] == "stripe"


def test_replayed_event_does_not_duplicate_payment(client, db, pending_order):
    payload = checkout_completed_event(pending_order.id)
    post_event(client, payload)
    res = post_event(client, payload)

    assert res.status_code == 200
    assert res.json()["duplicate"] is True
    assert db["payment"].count_documents({"transaction_id": "pi_123"}) == 1
    assert order_status(db, pending_order) == "processing"


def test_bad_signature_is_rejected_without_mutation(client, db, pending_order):
    payload = checkout_completed_event(pending_order.id)

    res = post_event(client, payload, signature=stripe_signature(payload, secret="whsec_wrong"))

    assert res.status_code == 400
    assert res.json() == {"detail": "Invalid signature"}
    assert db["payment"].count_documents({}) == 0
    assert order_status(db, pending_order) == "pending"


def test_missing_signature_is_rejected(client, db, pending_order):
    res = post_event(client, checkout_completed_event(pending_order.id), signature=False)
    assert res.status_code == 400
    assert db["payment"].count_documents({}) == 0


def test_tampered_body_is_rejected(client, db, pending_order):
    payload = checkout_completed_event(pending_order.id)
    signature = stripe_signature(payload)
    res = post_event(client, payload.replace("3998", "1"), signature=signature)
    assert res.status_code == 400
    assert order_status(db, pending_order) == "pending"


def test_unknown_order_is_acknowledged(client, db):
    res = post_event(client, checkout_completed_event(str(ObjectId())))
    assert res.status_code == 200
    assert res.json()["transitioned"] is False
    assert db["payment"].count_documents({}) == 0

    res = post_event(client, checkout_completed_event("not-an-order"))
    assert res.status_code == 200


def test_other_event_types_are_ignored(client, db, pending_order):
    payload = json.dumps({"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}})
    res = post_event(client, payload)
    assert res.status_code == 200
    assert db["payment"].count_documents({}) == 0
    assert order_status(db, pending_order) == "pending"


def test_unpaid_session_records_pending_payment_only(client, db, pending_order):
    res = post_event(client, checkout_completed_event(pending_order.id, payment_status="unpaid"))
    assert res.status_code == 200
    assert db["payment"].find_one({"order_id": pending_order.id})["status"] == "pending"
    assert order_status(db, pending_order) == "pending"


def test_paid_delivery_completes_earlier_pending_payment(db, pending_order):
    reconciler = PaymentReconciler(db)
    unpaid = json.loads(checkout_completed_event(pending_order.id, payment_status="unpaid", event_id="evt_1"))
    paid = json.loads(checkout_completed_event(pending_order.id, event_id="evt_2"))

    reconciler.handle_payment_confirmed(unpaid)
    result = reconciler.handle_payment_confirmed(paid)

    assert result == {"received": True, "duplicate": True, "transitioned": True}
    assert order_status(db, pending_order) == "processing"
    payments = list(db["payment"].find({"transaction_id": "pi_123"}))
    assert [p["status"] for p in payments] == ["completed"]
    assert payments[0]["amount"] == 39.98


def test_payment_for_cancelled_order_keeps_status(client, db, pending_order):
    OrderWorkflow(db).update_status(pending_order.id, "cancelled")

    res = post_event(client, checkout_completed_event(pending_order.id))

    assert res.json()["transitioned"] is False
    assert order_status(db, pending_order) == "cancelled"
    assert db["payment"].count_documents({"order_id": pending_order.id}) == 1


def test_replay_finishes_transition_after_partial_failure(db, pending_order):
    reconciler = PaymentReconciler(db)
    event = json.loads(checkout_completed_event(pending_order.id))
    # first delivery recorded the payment but crashed before moving the order
    db["payment"].insert_one({"order_id": pending_order.id, "amount": 39.98, "payment_method": "stripe",
                              "transaction_id": "pi_123", "status": "completed"})

    result = reconciler.handle_payment_confirmed(event)

    assert result == {"received": True, "duplicate": True, "transitioned": True}
    assert order_status(db, pending_order) == "processing"


def test_amount_falls_back_to_order_total(db, pending_order):
    event = json.loads(checkout_completed_event(pending_order.id, amount_total=None, payment_intent=None))
    PaymentReconciler(db).handle_payment_confirmed(event)
    payment = db["payment"].find_one({"order_id": pending_order.id})
    assert payment["amount"] == 39.98
    assert payment["transaction_id"] == "cs_test_1"


def test_store_failure_is_surfaced_for_retry(client, pending_order):
    class BrokenReconciler:
        def handle_payment_confirmed(self, event):
            raise ServerSelectionTimeoutError("connection refused on db-1:27017")

    main.app.dependency_overrides[main.get_reconciler] = lambda: BrokenReconciler()
    res = post_event(client, checkout_completed_event(pending_order.id))

    assert res.status_code == 503
    assert "db-1" not in res.text


def test_verify_event_rejects_garbage():
    gateway = PaymentGateway(get_settings())
    payload = b"not json"
    with pytest.raises(ValidationError):
        gateway.verify_event(payload, stripe_signature(payload.decode()))


def test_gateway_creates_session_with_order_metadata(monkeypatch, pending_order):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/pay/cs_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    session = PaymentGateway(get_settings()).create_checkout_session(pending_order)

    assert session == {"id": "cs_1", "url": "https://checkout.stripe.com/pay/cs_1"}
    assert calls[0]["metadata"]["order_id"] == pending_order.id
    assert calls[0]["line_items"][0]["price_data"]["unit_amount"] == 1999
    assert calls[0]["line_items"][0]["quantity"] == 2


def test_gateway_wraps_provider_errors(monkeypatch, pending_order):
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    with pytest.raises(UpstreamError):
        PaymentGateway(get_settings()).create_checkout_session(pending_order)
