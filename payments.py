"""
Payments

`PaymentGateway` wraps the Stripe calls: hosted checkout sessions and webhook
signature checks. `PaymentReconciler` applies verified
`checkout.session.completed` events. The unique index on
`payment.transaction_id` is the idempotency key, so a redelivered event never
records a second payment.
"""
import json
import logging
from typing import Any, Dict

import stripe
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings, get_settings
from database import create_document, now
from errors import UpstreamError, ValidationError
from orders import OrderWorkflow
from schemas import Order, Payment

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentGateway:
    def __init__(self, settings: Settings):
        self.settings = settings

    def create_checkout_session(self, order: Order) -> Dict[str, str]:
        line_items = [
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": item.product_name or "Product"},
                    "unit_amount": int(round(item.unit_price * 100)),
                },
                "quantity": item.quantity,
            }
            for item in order.items
        ]
        try:
            session = stripe.checkout.Session.create(
                api_key=self.settings.stripe_secret_key,
                mode="payment",
                line_items=line_items,
                success_url=f"{self.settings.app_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.settings.app_url}/cart",
                metadata={"order_id": order.id, "user_id": order.customer_id},
            )
        except stripe.StripeError as e:
            logger.error("Stripe session create failed for order %s: %s", order.id, e)
            raise UpstreamError("Payment provider unavailable")
        return {"id": session.id, "url": session.url}

    def is_session_paid(self, session_id: str) -> bool:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.settings.stripe_secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe session retrieve failed for %s: %s", session_id, e)
            raise UpstreamError("Payment provider unavailable")
        return session.payment_status == "paid"

    def verify_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.settings.stripe_webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE)
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise ValidationError("Invalid signature")
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("Webhook payload rejected: %s", e)
            raise ValidationError("Invalid payload")
        if not isinstance(event, dict):
            raise ValidationError("Invalid payload")
        return event


def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway(get_settings())


class PaymentReconciler:
    def __init__(self, db: Database):
        self.db = db
        self.orders = OrderWorkflow(db)

    def handle_payment_confirmed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        result = {"received": True, "duplicate": False, "transitioned": False}
        if event.get("type") != CHECKOUT_COMPLETED:
            logger.debug("Ignoring webhook event %s", event.get("type"))
            return result

        session = (event.get("data") or {}).get("object") or {}
        order_id = (session.get("metadata") or {}).get("order_id")
        order_doc = self._find_order(order_id)
        if order_doc is None:
            logger.warning("Webhook %s references unknown order %r, acknowledging", event.get("id"), order_id)
            return result

        intent = session.get("payment_intent")
        if isinstance(intent, dict):
            intent = intent.get("id")
        transaction_id = intent or session.get("id")
        if not transaction_id:
            logger.warning("Webhook %s has no transaction id, acknowledging", event.get("id"))
            return result

        completed = session.get("payment_status") == "paid"
        amount_total = session.get("amount_total")
        amount = amount_total / 100 if amount_total else order_doc["total_amount"]
        payment = Payment(
            order_id=order_id,
            amount=amount,
            payment_method="stripe",
            transaction_id=transaction_id,
            status="completed" if completed else "pending",
        )
        try:
            create_document(self.db, "payment", payment)
            logger.info("Recorded %s payment %s for order %s", payment.status, transaction_id, order_id)
        except DuplicateKeyError:
            result["duplicate"] = True
            logger.info("Payment %s already recorded, skipping insert", transaction_id)
            if completed:
                upgraded = self.db["payment"].update_one(
                    {"transaction_id": transaction_id, "status": "pending"},
                    {"$set": {"status": "completed", "amount": amount, "updated_at": now()}},
                )
                if upgraded.modified_count:
                    logger.info("Payment %s for order %s is now completed", transaction_id, order_id)

        if completed:
            result["transitioned"] = self.orders.mark_paid(order_id)
            if not result["transitioned"] and not result["duplicate"]:
                logger.warning("Order %s was %s when payment %s arrived, status left unchanged",
                               order_id, order_doc["status"], transaction_id)
        return result

    def _find_order(self, order_id: Any):
        if not order_id or not isinstance(order_id, str):
            return None
        try:
            return self.db["order"].find_one({"_id": ObjectId(order_id)})
        except InvalidId:
            return None
