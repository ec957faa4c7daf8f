"""
Accounts, the role workflow and chef identifier allocation.

Roles move only along ROLE_TRANSITIONS. Each move is a single conditional
update keyed on the expected source role, so two concurrent requests cannot
both apply the same transition.
"""
import logging
import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

import database
from errors import Conflict, DependencyFailure, Forbidden, InvalidState, NotFound
from schemas import AccountStatus, Role, User

logger = logging.getLogger(__name__)


class RoleEvent(str, Enum):
    REQUEST_CHEF = "request_chef"
    APPROVE_CHEF = "approve_chef"
    REJECT_CHEF = "reject_chef"
    REQUEST_ADMIN = "request_admin"
    APPROVE_ADMIN = "approve_admin"
    REJECT_ADMIN = "reject_admin"


ROLE_TRANSITIONS: Dict[Tuple[Role, RoleEvent], Role] = {
    (Role.USER, RoleEvent.REQUEST_CHEF): Role.CHEF_PENDING,
    (Role.CHEF_PENDING, RoleEvent.APPROVE_CHEF): Role.CHEF,
    (Role.CHEF_PENDING, RoleEvent.REJECT_CHEF): Role.USER,
    (Role.USER, RoleEvent.REQUEST_ADMIN): Role.ADMIN_PENDING,
    (Role.ADMIN_PENDING, RoleEvent.APPROVE_ADMIN): Role.ADMIN,
    (Role.ADMIN_PENDING, RoleEvent.REJECT_ADMIN): Role.USER,
}

# Each event fires from exactly one role.
EVENT_SOURCE: Dict[RoleEvent, Role] = {event: source for (source, event) in ROLE_TRANSITIONS}

REQUEST_EVENTS = (RoleEvent.REQUEST_CHEF, RoleEvent.REQUEST_ADMIN)

EVENT_TIMESTAMP = {
    RoleEvent.REQUEST_CHEF: "chefRequestedAt",
    RoleEvent.APPROVE_CHEF: "chefApprovedAt",
    RoleEvent.REQUEST_ADMIN: "adminRequestedAt",
    RoleEvent.APPROVE_ADMIN: "adminApprovedAt",
}

EVENT_CLEARS = {
    RoleEvent.REJECT_CHEF: "chefRequestedAt",
    RoleEvent.REJECT_ADMIN: "adminRequestedAt",
}


class InvalidRoleTransition(InvalidState):
    pass


def next_role(current: Role, event: RoleEvent) -> Role:
    try:
        return ROLE_TRANSITIONS[(Role(current), event)]
    except KeyError:
        raise InvalidRoleTransition(f"Cannot {event.value.replace('_', ' ')} while role is {Role(current).value}")


# Chef identifier allocation
CHEF_ID_ATTEMPTS = 20
CHEF_ID_SPACES = ((1000, 9999), (10000000, 99999999))


def allocate_chef_id(accounts: "AccountRepository", rng=random, attempts: int = CHEF_ID_ATTEMPTS) -> str:
    """Return a ``chef-<digits>`` id not held by any account.

    Draws from the 4-digit space first and widens to 8 digits once
    ``attempts`` draws have all collided.
    """
    for low, high in CHEF_ID_SPACES:
        for _ in range(attempts):
            candidate = f"chef-{rng.randint(low, high)}"
            if not accounts.chef_id_exists(candidate):
                return candidate
        logger.warning("Chef id space %d-%d exhausted after %d attempts", low, high, attempts)
    raise DependencyFailure("Could not allocate a chef id")


class AccountRepository:
    def __init__(self, collection):
        self.collection = collection

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": email})

    def chef_id_exists(self, chef_id: str) -> bool:
        return self.collection.find_one({"chefId": chef_id}, {"_id": 1}) is not None

    def register(self, user: User) -> str:
        if self.find_by_email(user.email):
            raise Conflict("User already exists")
        try:
            return database.create_document(self.collection.name, user, database=self.collection.database)
        except DuplicateKeyError:
            raise Conflict("User already exists")

    def update_profile(self, email: str, updates: Dict[str, Any]) -> dict:
        updates = dict(updates, updated_at=datetime.now(timezone.utc))
        result = self.collection.update_one({"email": email}, {"$set": updates})
        if result.matched_count == 0:
            raise NotFound("Account not found")
        return self.find_by_email(email)

    def list_accounts(self, role: Optional[str] = None, skip: int = 0, limit: int = 20) -> Tuple[List[dict], int]:
        query: Dict[str, Any] = {}
        if role:
            query["role"] = role
        total = self.collection.count_documents(query)
        items = list(self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit))
        return items, total

    def pending_requests(self) -> List[dict]:
        query = {"role": {"$in": [Role.CHEF_PENDING.value, Role.ADMIN_PENDING.value]}}
        return list(self.collection.find(query).sort("updated_at", DESCENDING))

    def apply(self, email: str, event: RoleEvent, extra: Optional[Dict[str, Any]] = None) -> dict:
        """Move the account along ``event`` if it is still in the event's source role."""
        source = EVENT_SOURCE[event]
        target = next_role(source, event)
        now = datetime.now(timezone.utc)

        query: Dict[str, Any] = {"email": email, "role": source.value}
        if event in REQUEST_EVENTS:
            query["status"] = {"$ne": AccountStatus.FRAUD.value}
        update: Dict[str, Any] = {"$set": {"role": target.value, "updated_at": now, **(extra or {})}}
        if event in EVENT_TIMESTAMP:
            update["$set"][EVENT_TIMESTAMP[event]] = now
        if event in EVENT_CLEARS:
            update["$unset"] = {EVENT_CLEARS[event]: ""}

        result = self.collection.update_one(query, update)
        if result.matched_count == 0:
            self._reject(email, event)
        logger.info("Account %s: %s -> %s (%s)", email, source.value, target.value, event.value)
        return self.find_by_email(email)

    def _reject(self, email: str, event: RoleEvent):
        account = self.find_by_email(email)
        if not account:
            raise NotFound("Account not found")
        current = account.get("role")
        if event in REQUEST_EVENTS:
            if account.get("status") == AccountStatus.FRAUD.value:
                raise Forbidden("Account is flagged as fraud")
            if current in (Role.CHEF_PENDING.value, Role.ADMIN_PENDING.value):
                raise Conflict(f"A {current} request is already open")
            raise Conflict(f"Account is already {current}")
        next_role(current, event)
        # the role matched on re-read; the account changed between update and read
        raise InvalidState(f"Account is no longer {EVENT_SOURCE[event].value}")

    def request_chef(self, email: str) -> dict:
        return self.apply(email, RoleEvent.REQUEST_CHEF)

    def request_admin(self, email: str) -> dict:
        return self.apply(email, RoleEvent.REQUEST_ADMIN)

    def approve_chef(self, email: str, rng=random) -> dict:
        account = self.find_by_email(email)
        if not account:
            raise NotFound("Account not found")
        next_role(account.get("role"), RoleEvent.APPROVE_CHEF)
        chef_id = allocate_chef_id(self, rng=rng)
        try:
            return self.apply(email, RoleEvent.APPROVE_CHEF, {"chefId": chef_id})
        except DuplicateKeyError:
            raise Conflict(f"Chef id {chef_id} was taken concurrently, retry the approval")

    def reject_chef(self, email: str) -> dict:
        return self.apply(email, RoleEvent.REJECT_CHEF)

    def approve_admin(self, email: str) -> dict:
        return self.apply(email, RoleEvent.APPROVE_ADMIN)

    def reject_admin(self, email: str) -> dict:
        return self.apply(email, RoleEvent.REJECT_ADMIN)

    def flag_fraud(self, email: str) -> dict:
        query = {
            "email": email,
            "role": {"$ne": Role.ADMIN.value},
            "status": {"$ne": AccountStatus.FRAUD.value},
        }
        update = {"$set": {"status": AccountStatus.FRAUD.value, "updated_at": datetime.now(timezone.utc)}}
        result = self.collection.update_one(query, update)
        if result.matched_count == 0:
            account = self.find_by_email(email)
            if not account:
                raise NotFound("Account not found")
            if account.get("role") == Role.ADMIN.value:
                raise Forbidden("Admins cannot be flagged as fraud")
            raise InvalidState("Account is already flagged as fraud")
        logger.info("Account %s flagged as fraud", email)
        return self.find_by_email(email)


def get_accounts(db=Depends(database.get_db)) -> AccountRepository:
    return AccountRepository(db[database.USERS])
