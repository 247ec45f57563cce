import logging
from typing import List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

import auth_utils
import crud
import models
import schemas
from database import get_db, SessionLocal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])
ws_router = APIRouter(tags=["Notifications"])


@router.get("", response_model=List[schemas.NotificationOut])
def get_notifications(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return crud.list_notifications(current_user.id, db)


@router.get("/unread-count", response_model=schemas.UnreadCount)
def get_unread_count(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return {"unread": crud.unread_count(current_user.id, db)}


@router.put("/read-all", response_model=schemas.BulkResult)
def mark_all_as_read(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return {"updated": crud.mark_all_notifications_read(current_user.id, db)}


@router.put("/{notification_id}/read", response_model=schemas.NotificationOut)
def mark_as_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return crud.mark_notification_read(notification_id, current_user.id, db)


@router.delete("", response_model=schemas.BulkResult)
def clear_all(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return {"updated": crud.clear_notifications(current_user.id, db)}


def _user_id_for_token(token):
    db = SessionLocal()
    try:
        user = auth_utils.user_from_token(token, db)
        return user.id if user else None
    finally:
        db.close()


@ws_router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: str = None):
    user_id = await run_in_threadpool(_user_id_for_token, token)

    if user_id is None:
        logger.info("WebSocket connection rejected: missing or invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry = websocket.app.state.connections
    await websocket.accept()
    registry.connect(user_id, websocket)
    try:
        await websocket.send_json({"type": "CONNECTED", "userId": user_id})
        while True:
            # clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(user_id, websocket)
