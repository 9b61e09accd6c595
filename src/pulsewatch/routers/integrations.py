from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.auth import WorkspaceContext, get_workspace_context, require_write_access
from pulsewatch.database import get_db
from pulsewatch.dependencies import get_dispatcher
from pulsewatch.models.integration import Integration
from pulsewatch.notifications import NotificationDispatcher
from pulsewatch.schemas import (
    ChannelTestResult,
    IntegrationCreate,
    IntegrationResponse,
    IntegrationUpdate,
)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


async def get_workspace_integration(
    db: AsyncSession, ctx: WorkspaceContext, integration_id: str
) -> Integration:
    result = await db.execute(
        select(Integration).where(
            Integration.id == integration_id, Integration.workspace_id == ctx.workspace.id
        )
    )
    integration = result.scalar_one_or_none()
    if not integration:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Integration not found",
        )
    return integration


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Integration)
        .where(Integration.workspace_id == ctx.workspace.id)
        .order_by(Integration.created_at)
    )
    return [IntegrationResponse.model_validate(i) for i in result.scalars().all()]


@router.post("", response_model=IntegrationResponse, status_code=201)
async def create_integration(
    body: IntegrationCreate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    integration = Integration(
        workspace_id=ctx.workspace.id,
        name=body.name,
        type=body.config.type,
        config=body.config.model_dump(mode="json"),
        enabled=body.enabled,
    )
    db.add(integration)
    await db.commit()
    await db.refresh(integration)
    return IntegrationResponse.model_validate(integration)


@router.patch("/{integration_id}", response_model=IntegrationResponse)
async def update_integration(
    integration_id: str,
    body: IntegrationUpdate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    integration = await get_workspace_integration(db, ctx, integration_id)
    if body.name is not None:
        integration.name = body.name.strip() or integration.name
    if body.config is not None:
        integration.type = body.config.type
        integration.config = body.config.model_dump(mode="json")
    if body.enabled is not None:
        integration.enabled = body.enabled
    await db.commit()
    await db.refresh(integration)
    return IntegrationResponse.model_validate(integration)


@router.delete("/{integration_id}", status_code=204)
async def delete_integration(
    integration_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    integration = await get_workspace_integration(db, ctx, integration_id)
    await db.delete(integration)
    await db.commit()


@router.post("/{integration_id}/test", response_model=ChannelTestResult)
async def test_integration(
    integration_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    integration = await get_workspace_integration(db, ctx, integration_id)
    try:
        await dispatcher.send_test(integration.channel)
    except Exception as e:
        return ChannelTestResult(
            name=integration.name, type=integration.type, success=False, error=str(e)
        )
    return ChannelTestResult(name=integration.name, type=integration.type, success=True)
