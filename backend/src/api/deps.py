"""
FastAPI dependencies for the identity boundary and order services.

This module resolves the bearer token into a ``Principal``, provides role
checks, the database session, and the ``OrderService`` wired with the
configured notification dispatcher.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import bind_order_id, get_logger, set_principal_id
from src.core.security import Principal, PrincipalRole, TokenError, principal_from_token
from src.database.connection import get_db
from src.services.orders.events import NotificationDispatcher, get_notification_dispatcher
from src.services.orders.service import OrderService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Resolve the authenticated caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        principal = principal_from_token(credentials.credentials)
    except TokenError as e:
        logger.warning(
            "Authentication failed",
            code=e.code,
            error=str(e),
        )
        raise credentials_exception from e

    set_principal_id(str(principal.id))
    return principal


def require_role(*allowed_roles: PrincipalRole):
    """
    Create a dependency that requires one of the given roles.

    Example:
        @router.get("/admin", dependencies=[Depends(require_role(PrincipalRole.ADMIN))])
        async def admin_endpoint():
            return {"message": "Admin access granted"}
    """

    async def role_checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if principal.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                principal_id=str(principal.id),
                role=principal.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return role_checker


async def bind_order_context(order_id: UUID) -> UUID:
    """Tag log lines of order-scoped requests with the order id."""
    bind_order_id(order_id)
    return order_id


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
) -> OrderService:
    return OrderService(db, dispatcher=dispatcher)


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
CurrentCustomer = Annotated[Principal, Depends(require_role(PrincipalRole.CUSTOMER))]
CurrentDriver = Annotated[Principal, Depends(require_role(PrincipalRole.DRIVER))]
CurrentAdmin = Annotated[Principal, Depends(require_role(PrincipalRole.ADMIN))]
CurrentCustomerOrDriver = Annotated[
    Principal, Depends(require_role(PrincipalRole.CUSTOMER, PrincipalRole.DRIVER))
]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
