"""
FastAPI dependencies for authentication, authorization and shared services.

Authentication:
  Tokens are issued by the identity service, not by this API. Every
  protected endpoint expects "Authorization: Bearer <JWT>" whose "sub"
  claim is an account id, signed with SECRET_KEY.

  get_current_account (JWT -> Account)
      ├── require_jar_account (Account -> Account)  [PARENT or CHILD]
      ├── require_parent      (Account -> Account)  [PARENT]
      ├── require_child       (Account -> Account)  [CHILD]
      └── require_admin       (Account -> Account)  [ADMIN]

  Admins operate the platform wallet through /admin/* and cannot move
  money in or out of jars, so wallet mutations use require_jar_account.

Shared services:
  The provider selector, notifier, reconciler and session factory are built
  once in the application lifespan and stored on app.state. Routes receive
  them through the get_* dependencies below, which tests override.
"""

import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db
from app.models.account import Account, AccountRole
from app.providers.selector import ProviderSelector
from app.security import decode_access_token
from app.services.notification_service import PaymentNotifier
from app.services.settlement_service import SettlementReconciler


# auto_error=False so a missing header is a 401 like any other bad token
bearer_scheme = HTTPBearer(auto_error=False)


async def authenticate_token(db: AsyncSession, token: str | None) -> Account | None:
    """
    Resolve a bearer token to an active Account, or None if it is not valid.

    Shared by the HTTP dependency and the websocket endpoint, which receives
    its token as a query parameter.
    """
    if not token:
        return None
    try:
        payload = decode_access_token(token)
        account_id_str: str | None = payload.get("sub")
        if account_id_str is None:
            return None
        account_id = uuid.UUID(account_id_str)
    except (JWTError, ValueError):
        return None

    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None or not account.is_active:
        return None
    return account


async def get_current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """
    Extract and validate the JWT, then return the corresponding Account.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired, or
                           the account doesn't exist.
    """
    account = await authenticate_token(db, credentials.credentials if credentials else None)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account


def _require_role(*roles: AccountRole, detail: str):
    async def dependency(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return account

    return dependency


require_jar_account = _require_role(
    AccountRole.PARENT,
    AccountRole.CHILD,
    detail="Admin accounts cannot move jar funds. Use /admin/* endpoints.",
)
require_parent = _require_role(AccountRole.PARENT, detail="Parent access required")
require_child = _require_role(AccountRole.CHILD, detail="Child access required")
require_admin = _require_role(AccountRole.ADMIN, detail="Admin access required")


# ---------------------------------------------------------------------------
# Shared services (built in the lifespan, see app/main.py)
# ---------------------------------------------------------------------------


def get_provider_selector(request: Request) -> ProviderSelector:
    return request.app.state.provider_selector


def get_notifier(request: Request) -> PaymentNotifier:
    return request.app.state.notifier


def get_reconciler(request: Request) -> SettlementReconciler:
    return request.app.state.reconciler


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory
