"""
Session tokens and role guards.

Tokens carry ``{uid, email, role}`` but the guards never trust the embedded
role: they reload the account on every request, so approvals, rejections and
fraud flags take effect before the token expires.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from jose import JWTError, jwt

import config
from accounts import AccountRepository, get_accounts
from errors import Forbidden, InvalidToken, NotFound, Unauthorized
from schemas import AccountStatus, Role

logger = logging.getLogger(__name__)


# Token codec
def create_token(claims: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "uid": claims.get("uid"),
        "email": claims.get("email"),
        "role": claims.get("role", Role.USER.value),
        "iat": now,
        "exp": now + timedelta(days=config.TOKEN_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except JWTError as e:
        logger.warning("Rejected session token: %s", e)
        raise InvalidToken("Invalid or expired token")


# Session resolver
def extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(config.TOKEN_COOKIE)
    if token:
        return token
    authorization = request.headers.get("Authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def get_session(request: Request) -> Dict[str, Any]:
    token = extract_token(request)
    if not token:
        raise Unauthorized("Unauthorized access")
    claims = decode_token(token)
    request.state.user = claims
    return claims


# Role guards
def require_account(
    request: Request,
    session: Dict[str, Any] = Depends(get_session),
    accounts: AccountRepository = Depends(get_accounts),
) -> dict:
    email = session.get("email")
    if not email:
        raise Unauthorized("Token carries no email")
    account = accounts.find_by_email(email)
    if not account:
        raise NotFound("Account not found")
    request.state.account = account
    return account


def require_admin(account: dict = Depends(require_account)) -> dict:
    if account.get("role") != Role.ADMIN.value:
        raise Forbidden("Admin only")
    return account


def require_chef(request: Request, account: dict = Depends(require_account)) -> dict:
    if account.get("role") != Role.CHEF.value:
        raise Forbidden("Chef only")
    if account.get("status") == AccountStatus.FRAUD.value:
        raise Forbidden("Account is flagged as fraud")
    request.state.chef_id = account.get("chefId")
    return account
