"""Authentication and role-checking dependencies.

The identity collaborator issues a Bearer JWT carrying the account id
(``sub``) and role. The engine-side Account row is created on first sight.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.security import TokenData, decode_access_token
from linkloop.database import get_db
from linkloop.logging_config import account_id_ctx, get_logger
from linkloop.models.account import Account, AccountRole

logger = get_logger(__name__)


async def get_current_account(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Extract and validate the calling account.

    Returns:
        The Account for the verified token subject

    Raises:
        HTTPException 401: If no valid Bearer token is present
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise credentials_exception

    payload = decode_access_token(auth_header[7:])
    if payload is None:
        raise credentials_exception

    try:
        token_data = TokenData(payload)
        role = AccountRole(token_data.role)
    except (KeyError, ValueError):
        raise credentials_exception

    account = await _get_or_create_account(db, token_data, role)
    account_id_ctx.set(str(account.id))
    return account


async def _get_or_create_account(
    db: AsyncSession, token_data: TokenData, role: AccountRole
) -> Account:
    result = await db.execute(select(Account).where(Account.id == token_data.account_id))
    account = result.scalar_one_or_none()

    if account is None:
        account = Account(
            id=token_data.account_id,
            role=role,
            display_name=token_data.name,
        )
        db.add(account)
        try:
            await db.commit()
        except IntegrityError:
            # Another request created it first
            await db.rollback()
            result = await db.execute(
                select(Account).where(Account.id == token_data.account_id)
            )
            return result.scalar_one()
        await db.refresh(account)
        logger.info(
            "Account registered",
            account_id=str(account.id),
            role=role.value,
        )
        return account

    changed = False
    if account.role != role:
        logger.warning(
            "Account role changed by identity provider",
            account_id=str(account.id),
            old_role=account.role.value,
            new_role=role.value,
        )
        account.role = role
        changed = True
    if token_data.name and account.display_name != token_data.name:
        account.display_name = token_data.name
        changed = True
    if changed:
        await db.commit()
        await db.refresh(account)
    return account


# Type alias for cleaner route signatures
CurrentAccount = Annotated[Account, Depends(get_current_account)]


class RoleChecker:
    """Dependency that verifies the caller has one of the allowed roles.

    Usage:
        @router.post("/readings")
        async def submit(account: PrimaryAccount):
            ...
    """

    def __init__(self, allowed_roles: list[AccountRole]):
        self.allowed_roles = allowed_roles

    async def __call__(self, account: CurrentAccount) -> Account:
        if account.role not in self.allowed_roles:
            logger.warning(
                "Role check failed",
                account_id=str(account.id),
                role=account.role.value,
                allowed=[r.value for r in self.allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return account


require_primary = RoleChecker([AccountRole.PRIMARY])
require_member = RoleChecker([AccountRole.MEMBER])

PrimaryAccount = Annotated[Account, Depends(require_primary)]
MemberAccount = Annotated[Account, Depends(require_member)]
