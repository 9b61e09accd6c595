from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.auth import WorkspaceContext, get_workspace_context, require_write_access
from pulsewatch.database import get_db
from pulsewatch.dependencies import get_dispatcher
from pulsewatch.models.alert import AlertContact, AlertRule
from pulsewatch.models.monitor import Monitor
from pulsewatch.notifications import NotificationDispatcher
from pulsewatch.routers.monitors import get_workspace_monitor
from pulsewatch.schemas import (
    AlertContactCreate,
    AlertContactResponse,
    AlertRuleCreate,
    AlertRuleResponse,
    ChannelTestResult,
)

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


async def get_workspace_contact(db: AsyncSession, ctx: WorkspaceContext, contact_id: str) -> AlertContact:
    result = await db.execute(
        select(AlertContact).where(
            AlertContact.id == contact_id, AlertContact.workspace_id == ctx.workspace.id
        )
    )
    contact = result.scalar_one_or_none()
    if not contact:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert contact not found",
        )
    return contact


# --- Contacts ---

@router.get("/contacts", response_model=list[AlertContactResponse])
async def list_contacts(
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AlertContact)
        .where(AlertContact.workspace_id == ctx.workspace.id)
        .order_by(AlertContact.created_at)
    )
    return [AlertContactResponse.model_validate(c) for c in result.scalars().all()]


@router.post("/contacts", response_model=AlertContactResponse, status_code=201)
async def create_contact(
    body: AlertContactCreate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    contact = AlertContact(
        workspace_id=ctx.workspace.id,
        name=body.name,
        type=body.config.type,
        config=body.config.model_dump(mode="json"),
    )
    db.add(contact)
    await db.commit()
    await db.refresh(contact)
    return AlertContactResponse.model_validate(contact)


@router.delete("/contacts/{contact_id}", status_code=204)
async def delete_contact(
    contact_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    contact = await get_workspace_contact(db, ctx, contact_id)
    await db.delete(contact)
    await db.commit()


@router.post("/contacts/{contact_id}/test", response_model=ChannelTestResult)
async def test_contact(
    contact_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    contact = await get_workspace_contact(db, ctx, contact_id)
    try:
        await dispatcher.send_test(contact.channel)
    except Exception as e:
        return ChannelTestResult(name=contact.name, type=contact.type, success=False, error=str(e))
    return ChannelTestResult(name=contact.name, type=contact.type, success=True)


# --- Rules ---

@router.get("/rules", response_model=list[AlertRuleResponse])
async def list_rules(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, monitor_id)
    result = await db.execute(select(AlertRule).where(AlertRule.monitor_id == monitor_id))
    return [AlertRuleResponse.model_validate(r) for r in result.scalars().all()]


@router.post("/rules", response_model=AlertRuleResponse, status_code=201)
async def create_rule(
    body: AlertRuleCreate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, body.monitor_id)
    await get_workspace_contact(db, ctx, body.alert_contact_id)

    existing = await db.execute(
        select(AlertRule).where(
            AlertRule.monitor_id == body.monitor_id,
            AlertRule.alert_contact_id == body.alert_contact_id,
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This contact is already attached to the monitor",
        )

    rule = AlertRule(**body.model_dump())
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return AlertRuleResponse.model_validate(rule)


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AlertRule)
        .join(Monitor, Monitor.id == AlertRule.monitor_id)
        .where(AlertRule.id == rule_id, Monitor.workspace_id == ctx.workspace.id)
    )
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    await db.delete(rule)
    await db.commit()
