from fastapi import APIRouter, Depends, Form, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.auth import (
    WorkspaceContext,
    create_access_token,
    get_workspace_context,
    hash_password,
    verify_password,
)
from pulsewatch.database import get_db
from pulsewatch.models.user import User
from pulsewatch.models.workspace import Workspace, WorkspaceMember
from pulsewatch.schemas import LoginResponse, SignupRequest, UserResponse, WorkspaceResponse

router = APIRouter(prefix="/auth", tags=["auth"])


def _session_response(body: LoginResponse, user: User, status_code: int = 200) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    response.set_cookie(
        key="access_token",
        value=create_access_token(data={"sub": user.id}),
        httponly=True,
        samesite="lax",
        max_age=60 * 60 * 24,
        secure=False,
    )
    return response


@router.post("/signup", response_model=LoginResponse, status_code=201)
async def signup(body: SignupRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == body.email))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists",
        )

    result = await db.execute(select(Workspace).where(Workspace.slug == body.workspace_slug))
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This workspace slug is already taken",
        )

    user = User(
        email=body.email,
        password_hash=hash_password(body.password),
        name=body.name,
    )
    workspace = Workspace(
        name=body.workspace_name or f"{body.name}'s workspace",
        slug=body.workspace_slug,
        plan="free",
    )
    db.add_all([user, workspace])
    await db.flush()
    db.add(WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role="owner"))
    await db.commit()
    await db.refresh(user)

    return _session_response(
        LoginResponse(
            message="Account created successfully",
            user=UserResponse.model_validate(user),
            workspace=WorkspaceResponse.model_validate(workspace),
        ),
        user,
        status_code=201,
    )


@router.post("/login", response_model=LoginResponse)
async def login_user(
    username: str = Form(...),
    password: str = Form(...),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.email == username))
    user = result.scalar_one_or_none()
    if not user or not verify_password(password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated",
        )

    return _session_response(
        LoginResponse(message="Logged in successfully", user=UserResponse.model_validate(user)),
        user,
    )


@router.post("/logout")
async def logout():
    response = JSONResponse(content={"message": "Logged out successfully"})
    response.delete_cookie("access_token")
    return response


@router.get("/me", response_model=LoginResponse)
async def get_me(ctx: WorkspaceContext = Depends(get_workspace_context)):
    return LoginResponse(
        message="ok",
        user=UserResponse.model_validate(ctx.user),
        workspace=WorkspaceResponse.model_validate(ctx.workspace),
    )
