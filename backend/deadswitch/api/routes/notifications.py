from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from datetime import datetime
import logging

from deadswitch.db.session import get_db
from deadswitch.api.deps import get_current_identity
from deadswitch.models.notification import Notification
from deadswitch.services.notification_ws import manager
from deadswitch.core.security import decode_access_token

router = APIRouter()
logger = logging.getLogger(__name__)

class NotificationOut(BaseModel):
    id: int
    type: str
    message: str
    entry_id: int | None
    created_at: datetime
    read: bool

    class Config:
        from_attributes = True

@router.get("/", response_model=list[NotificationOut])
def list_notifications(db: Session = Depends(get_db), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    items = db.query(Notification).filter(Notification.user_id == user_id).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(200).all()
    return items

@router.get("/unread-count", response_model=dict)
def unread_count(db: Session = Depends(get_db), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    count = db.query(Notification).filter(Notification.user_id == user_id, Notification.read == False).count()  # noqa: E712
    return {"unread": count}

@router.post("/{notif_id}/read")
def mark_notification(notif_id: int, db: Session = Depends(get_db), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    n = db.query(Notification).filter(Notification.id == notif_id, Notification.user_id == user_id).first()
    if not n:
        raise HTTPException(status_code=404, detail="Not found")
    n.read = True
    db.commit()
    manager.push(user_id, {"type": "notification_read", "data": {"id": n.id}})
    return {"status": "ok"}


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket, token: str = Query(...)):
    """Live reminders and condition events for the token's user.

    Server messages:
      {"type": "notification", "data": { NotificationOut }}
      {"type": "condition_event", "data": {"action", "condition_id", "message_id", "optimistic"}}
    """
    try:
        payload = decode_access_token(token)
        user_id = payload.get("sub") or ""
        if not user_id:
            await websocket.close(code=4401)
            return
    except Exception:
        await websocket.close(code=4401)
        return

    await manager.connect(user_id, websocket)
    try:
        while True:
            # client pings are read and ignored
            _ = await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(user_id, websocket)
    except Exception:
        logger.exception(f"WebSocket error for user {user_id}")
        await manager.disconnect(user_id, websocket)
