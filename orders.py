"""
Order lifecycle.

    pending --accept--> accepted --pay--> (paid) --deliver--> delivered
    pending --cancel--> cancelled

Every transition is one ``update_one`` whose filter carries the expected
state and the acting owner. When nothing matches, the order is re-read only
to pick the error to report.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends
from pymongo import DESCENDING

import database
from database import to_object_id
from errors import Forbidden, InvalidState, NotFound
from schemas import AccountStatus, Order, OrderStatus, PaymentStatus, Role

logger = logging.getLogger(__name__)

# accounts with a pending role request still order as customers
CUSTOMER_ROLES = {Role.USER.value, Role.CHEF_PENDING.value, Role.ADMIN_PENDING.value}


class OrderService:
    def __init__(self, db):
        self.db = db
        self.orders = db[database.ORDERS]
        self.meals = db[database.MEALS]

    def get(self, order_id: str) -> dict:
        order = self.orders.find_one({"_id": to_object_id(order_id)})
        if not order:
            raise NotFound("Order not found")
        return order

    def create(self, account: dict, payload: Dict[str, Any]) -> dict:
        email = account["email"]
        if account.get("role") not in CUSTOMER_ROLES:
            raise Forbidden("Only customers can place orders")
        if account.get("status") == AccountStatus.FRAUD.value:
            raise Forbidden("Account is flagged as fraud")
        if payload.get("userEmail") != email:
            raise Forbidden("Orders can only be placed for your own account")
        meal = self.meals.find_one({"_id": to_object_id(payload["foodId"])})
        if not meal:
            raise NotFound("Meal not found")
        if payload.get("price") is not None and float(payload["price"]) != float(meal["price"]):
            logger.warning("Ignoring client price %s for meal %s (listed at %s)", payload["price"], meal["_id"], meal["price"])

        price = float(meal["price"])
        quantity = payload["quantity"]
        order = Order(
            foodId=str(meal["_id"]),
            mealName=meal["name"],
            chefId=meal["chefId"],
            chefEmail=meal["chefEmail"],
            userEmail=email,
            userAddress=payload.get("userAddress"),
            price=price,
            quantity=quantity,
            totalPrice=round(price * quantity, 2),
            orderTime=datetime.now(timezone.utc),
        )
        order_id = database.create_document(database.ORDERS, order, database=self.db)
        logger.info("Order %s placed by %s for %s x%d", order_id, email, order.mealName, quantity)
        return self.orders.find_one({"_id": to_object_id(order_id)})

    def _transition(self, order_id: str, expected: Dict[str, Any], owner: Dict[str, Any], changes: Dict[str, Any], action: str) -> dict:
        oid = to_object_id(order_id)
        changes = dict(changes, updated_at=datetime.now(timezone.utc))
        result = self.orders.update_one({"_id": oid, **owner, **expected}, {"$set": changes})
        if result.matched_count == 0:
            order = self.orders.find_one({"_id": oid})
            if not order:
                raise NotFound("Order not found")
            for field, value in owner.items():
                if order.get(field) != value:
                    raise Forbidden(f"Not allowed to {action} this order")
            raise InvalidState(
                f"Cannot {action} order in state {order.get('orderStatus')}/{order.get('paymentStatus')}"
            )
        logger.info("Order %s: %s", order_id, action)
        return self.orders.find_one({"_id": oid})

    def accept(self, order_id: str, chef_id: str) -> dict:
        return self._transition(
            order_id,
            expected={"orderStatus": OrderStatus.PENDING.value},
            owner={"chefId": chef_id},
            changes={"orderStatus": OrderStatus.ACCEPTED.value, "acceptedAt": datetime.now(timezone.utc)},
            action="accept",
        )

    def cancel(self, order_id: str, chef_id: str) -> dict:
        return self._transition(
            order_id,
            expected={"orderStatus": OrderStatus.PENDING.value},
            owner={"chefId": chef_id},
            changes={"orderStatus": OrderStatus.CANCELLED.value, "cancelledAt": datetime.now(timezone.utc)},
            action="cancel",
        )

    def mark_paid(self, order_id: str, email: str) -> dict:
        return self._transition(
            order_id,
            expected={"orderStatus": OrderStatus.ACCEPTED.value, "paymentStatus": {"$ne": PaymentStatus.PAID.value}},
            owner={"userEmail": email},
            changes={"paymentStatus": PaymentStatus.PAID.value, "paidAt": datetime.now(timezone.utc)},
            action="pay",
        )

    def deliver(self, order_id: str, chef_email: str) -> dict:
        return self._transition(
            order_id,
            expected={"orderStatus": OrderStatus.ACCEPTED.value, "paymentStatus": PaymentStatus.PAID.value},
            owner={"chefEmail": chef_email},
            changes={"orderStatus": OrderStatus.DELIVERED.value, "deliveredAt": datetime.now(timezone.utc)},
            action="deliver",
        )

    def attach_intent(self, order_id: str, intent_id: str):
        self.orders.update_one({"_id": to_object_id(order_id)}, {"$set": {"paymentIntentId": intent_id}})

    def for_customer(self, email: str, skip: int = 0, limit: int = 20) -> List[dict]:
        return self._list({"userEmail": email}, skip, limit)

    def for_chef(self, chef_id: str, status: Optional[str] = None, skip: int = 0, limit: int = 20) -> List[dict]:
        query: Dict[str, Any] = {"chefId": chef_id}
        if status:
            query["orderStatus"] = status
        return self._list(query, skip, limit)

    def _list(self, query, skip, limit):
        return list(self.orders.find(query).sort("orderTime", DESCENDING).skip(skip).limit(limit))

    def counts_by_status(self) -> Dict[str, int]:
        return {status.value: self.orders.count_documents({"orderStatus": status.value}) for status in OrderStatus}


def get_orders(db=Depends(database.get_db)) -> OrderService:
    return OrderService(db)
