"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meisterdesk.auth.jwt import decode_token
from meisterdesk.database import get_db
from meisterdesk.models.account import Account

# Returns None if no token provided; the dependencies raise 401 themselves so
# the stream route can fall back to the ``access_token`` query parameter.
_bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _account_id_from_token(token: str) -> uuid.UUID:
    try:
        payload = decode_token(token)
    except JWTError:
        raise _credentials_exception() from None

    # Only accept access tokens
    if payload.get("type") != "access":
        raise _credentials_exception("Invalid token type")

    sub: str | None = payload.get("sub")
    if sub is None:
        raise _credentials_exception()
    try:
        return uuid.UUID(sub)
    except ValueError:
        raise _credentials_exception() from None


async def _load_account(token: str, db: AsyncSession) -> Account:
    account_id = _account_id_from_token(token)
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()

    if account is None:
        raise _credentials_exception()

    if not account.is_active:
        raise _credentials_exception("Account is inactive")

    return account


async def get_current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Validate the Bearer token and return the authenticated account.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired, or the
            account does not exist or is inactive.
    """
    if credentials is None:
        raise _credentials_exception("Not authenticated")
    return await _load_account(credentials.credentials, db)


async def get_stream_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Query(default=None, include_in_schema=False),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Like :func:`get_current_account`, also accepting ``?access_token=``.

    Only for EventSource routes, which cannot send headers. Query strings end
    up in access logs, so no other route accepts it.
    """
    token = credentials.credentials if credentials is not None else access_token
    if not token:
        raise _credentials_exception("Not authenticated")
    return await _load_account(token, db)
