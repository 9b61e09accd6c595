from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.auth import user_from_token
from pulsewatch.database import get_db
from pulsewatch.dependencies import get_publisher
from pulsewatch.events import EventPublisher
from pulsewatch.models.workspace import WorkspaceMember

router = APIRouter(tags=["events"])


@router.websocket("/ws/workspaces/{workspace_id}")
async def workspace_events(
    websocket: WebSocket,
    workspace_id: str,
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    user = await user_from_token(db, websocket.cookies.get("access_token"))
    membership = None
    if user is not None:
        result = await db.execute(
            select(WorkspaceMember).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user.id,
            )
        )
        membership = result.scalar_one_or_none()
    if membership is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await publisher.connect(workspace_id, websocket)
    try:
        while True:
            # Clients only listen; inbound frames are keepalives
            await websocket.receive_text()
    except WebSocketDisconnect:
        await publisher.disconnect(workspace_id, websocket)
