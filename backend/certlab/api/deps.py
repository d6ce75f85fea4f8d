"""
FastAPI dependencies

- SessionDep: one database session per request
- CurrentUser: user resolved from the ``Authorization: Bearer <token>``
  header issued by the auth service
- LockManagerDep / ProviderDep / RetryQueueDep: application-owned services
  created in the lifespan and stored on ``app.state``
"""
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from certlab.api.schemas import TokenPayload
from certlab.core import security
from certlab.core.db import engine
from certlab.integrations.polar import BillingProvider
from certlab.models import User
from certlab.services.subscription_lock import BaseLockManager
from certlab.services.webhook_retry import WebhookRetryQueue

reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]


def get_current_user(session: SessionDep, token: TokenDep) -> User:
    """
    Resolve the current user from the bearer token.

    Raises:
        HTTPException: 401 when the token is invalid or the user is unknown
    """
    try:
        payload = security.decode_access_token(token.credentials)
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if not token_data.sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    user = session.get(User, token_data.sub)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_lock_manager(request: Request) -> BaseLockManager:
    return request.app.state.lock_manager


def get_billing_provider(request: Request) -> BillingProvider:
    return request.app.state.billing_provider


def get_retry_queue(request: Request) -> WebhookRetryQueue | None:
    return getattr(request.app.state, "webhook_retry_queue", None)


LockManagerDep = Annotated[BaseLockManager, Depends(get_lock_manager)]
ProviderDep = Annotated[BillingProvider, Depends(get_billing_provider)]
RetryQueueDep = Annotated[WebhookRetryQueue | None, Depends(get_retry_queue)]
