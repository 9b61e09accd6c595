from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pulsewatch.config import get_settings
from pulsewatch.database import get_db
from pulsewatch.models.user import User
from pulsewatch.models.workspace import Workspace, WorkspaceMember

settings = get_settings()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

WORKSPACE_HEADER = "X-Workspace-Id"
WRITE_ROLES = ("owner", "admin", "member")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def user_from_token(db: AsyncSession, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None or payload.get("sub") is None:
        return None
    result = await db.execute(select(User).where(User.id == payload["sub"]))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return user


async def get_current_user_api(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    token = request.cookies.get("access_token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    user = await user_from_token(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user


@dataclass
class WorkspaceContext:
    user: User
    workspace: Workspace
    role: str

    @property
    def can_write(self) -> bool:
        return self.role in WRITE_ROLES


async def get_workspace_context(
    request: Request,
    user: User = Depends(get_current_user_api),
    db: AsyncSession = Depends(get_db),
) -> WorkspaceContext:
    """Resolve the workspace a request acts on.

    ``X-Workspace-Id`` selects one explicitly; otherwise the user's oldest
    membership is used.
    """
    query = (
        select(WorkspaceMember)
        .where(WorkspaceMember.user_id == user.id)
        .options(selectinload(WorkspaceMember.workspace))
        .order_by(WorkspaceMember.joined_at)
    )
    workspace_id = request.headers.get(WORKSPACE_HEADER)
    if workspace_id:
        query = query.where(WorkspaceMember.workspace_id == workspace_id)

    result = await db.execute(query.limit(1))
    membership = result.scalar_one_or_none()
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this workspace",
        )
    return WorkspaceContext(user=user, workspace=membership.workspace, role=membership.role)


async def require_write_access(
    ctx: WorkspaceContext = Depends(get_workspace_context),
) -> WorkspaceContext:
    if not ctx.can_write:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your role does not allow changes in this workspace",
        )
    return ctx
