"""
Payment bridge between orders and the payment provider (Stripe).

A payment is only recorded once the provider reports the intent as
``succeeded`` for the right order and amount. The order transition runs
before the ledger insert so that only the request that actually moved the
order to ``paid`` appends a ledger entry. Entries are unique per
``transactionId``; a webhook for an order already paid through the client
path fills in the entry if it is missing.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import Depends
from pymongo.errors import DuplicateKeyError

import config
import database
from errors import Forbidden, InvalidSignature, InvalidState, NotFound, PaymentProviderFailure, ValidationFailed
from orders import OrderService, get_orders
from schemas import OrderStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)


def amount_in_minor_units(total_price: float) -> int:
    return int(round(total_price * 100))


class StripeProvider:
    """Thin wrapper returning plain dicts so the bridge never sees Stripe objects."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @staticmethod
    def _intent(intent) -> Dict[str, Any]:
        return {
            "id": intent["id"],
            "status": intent["status"],
            "amount": intent["amount"],
            "currency": intent["currency"],
            "client_secret": intent.get("client_secret"),
            "metadata": dict(intent.get("metadata") or {}),
        }

    def _require_key(self):
        if not self.secret_key:
            raise PaymentProviderFailure("Payment provider not configured")

    def create_intent(self, amount: int, currency: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.exception("PaymentIntent creation failed")
            raise PaymentProviderFailure(f"Payment provider error: {e.user_message or 'request failed'}")
        return self._intent(intent)

    def retrieve_intent(self, intent_id: str) -> Dict[str, Any]:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.InvalidRequestError:
            raise InvalidState(f"Unknown payment intent {intent_id}")
        except stripe.StripeError as e:
            logger.exception("PaymentIntent lookup failed")
            raise PaymentProviderFailure(f"Payment provider error: {e.user_message or 'request failed'}")
        return self._intent(intent)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentProviderFailure("Payment webhook not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Rejected payment webhook: %s", e)
            raise InvalidSignature("Invalid webhook signature")
        obj = event["data"]["object"]
        return {"type": event["type"], "intent": self._intent(obj) if obj.get("object") == "payment_intent" else None}


def get_payment_provider() -> StripeProvider:
    return StripeProvider(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET)


class PaymentBridge:
    def __init__(self, orders: OrderService, provider, currency: str = config.PAYMENT_CURRENCY):
        self.orders = orders
        self.provider = provider
        self.currency = currency
        self.ledger = orders.db[database.PAYMENTS]

    def _payable(self, order_id: str, email: str) -> dict:
        order = self.orders.get(order_id)
        if order.get("userEmail") != email:
            raise Forbidden("Not your order")
        if order.get("orderStatus") != OrderStatus.ACCEPTED.value:
            raise InvalidState(f"Order is {order.get('orderStatus')}, only accepted orders can be paid")
        if order.get("paymentStatus") == PaymentStatus.PAID.value:
            raise InvalidState("Order is already paid")
        return order

    def create_intent(self, order_id: str, email: str) -> Dict[str, Any]:
        order = self._payable(order_id, email)
        order_id = str(order["_id"])
        amount = amount_in_minor_units(order["totalPrice"])
        intent = self.provider.create_intent(
            amount=amount,
            currency=self.currency,
            metadata={"orderId": order_id, "email": email},
        )
        self.orders.attach_intent(order_id, intent["id"])
        logger.info("Payment intent %s created for order %s (%d)", intent["id"], order_id, amount)
        return {"clientSecret": intent["client_secret"], "paymentIntentId": intent["id"], "amount": amount}

    def verify_intent(self, order: dict, intent: Dict[str, Any]):
        order_id = str(order["_id"])
        if intent.get("metadata", {}).get("orderId") != order_id:
            raise InvalidState("Payment intent does not belong to this order")
        if intent.get("status") != "succeeded":
            raise InvalidState(f"Payment intent is {intent.get('status')}")
        if intent.get("amount") != amount_in_minor_units(order["totalPrice"]):
            raise InvalidState("Payment amount does not match order total")

    def confirm(self, order_id: str, email: str, intent_id: str) -> dict:
        """Mark the order paid after the provider confirms ``intent_id`` and record the payment."""
        order = self._payable(order_id, email)
        self.verify_intent(order, self.provider.retrieve_intent(intent_id))
        return self._settle(order, intent_id, amount_in_minor_units(order["totalPrice"]))

    def _settle(self, order: dict, intent_id: str, amount: int) -> dict:
        paid = self.orders.mark_paid(str(order["_id"]), order["userEmail"])
        self._record(paid, intent_id, amount)
        return paid

    def _record(self, order: dict, intent_id: str, amount: int) -> bool:
        """Append the ledger entry for ``intent_id`` unless one exists. Returns True if inserted."""
        if self.ledger.find_one({"transactionId": intent_id}):
            return False
        payment = Payment(
            email=order["userEmail"],
            orderId=str(order["_id"]),
            transactionId=intent_id,
            amount=amount,
            currency=self.currency,
            paidAt=order.get("paidAt") or datetime.now(timezone.utc),
        )
        try:
            database.create_document(database.PAYMENTS, payment, database=self.orders.db)
        except DuplicateKeyError:
            return False
        logger.info("Payment %s recorded for order %s", intent_id, order["_id"])
        return True

    def handle_event(self, event: Dict[str, Any]) -> bool:
        """Apply a verified provider event. Returns True if an order changed.

        Events that match no payable order are logged and acknowledged, since
        the provider keeps retrying anything that is not a 2xx.
        """
        intent = event.get("intent")
        if event.get("type") != "payment_intent.succeeded" or not intent:
            return False
        order_id = intent["metadata"].get("orderId")
        if not order_id:
            logger.warning("Payment intent %s carries no order id", intent["id"])
            return False
        try:
            order = self.orders.get(order_id)
            self.verify_intent(order, intent)
        except (NotFound, InvalidState, ValidationFailed) as e:
            logger.warning("Ignoring payment intent %s for order %s: %s", intent["id"], order_id, e.message)
            return False
        if order.get("paymentStatus") == PaymentStatus.PAID.value:
            # paid through the client path; make sure the charge is in the ledger
            if self._record(order, intent["id"], intent["amount"]):
                logger.info("Order %s already paid, ledger entry added for %s", order_id, intent["id"])
            return False
        try:
            self._settle(order, intent["id"], intent["amount"])
        except InvalidState as e:
            logger.warning("Payment intent %s not applied to order %s: %s", intent["id"], order_id, e.message)
            return False
        return True

    def history(self, email: str):
        return list(self.ledger.find({"email": email}).sort("paidAt", -1))


def get_payment_bridge(orders: OrderService = Depends(get_orders), provider=Depends(get_payment_provider)) -> PaymentBridge:
    return PaymentBridge(orders, provider)
