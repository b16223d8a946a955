from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from deadswitch.api.deps import get_current_identity
from deadswitch.core.clock import utcnow
from deadswitch.db.session import get_db
from deadswitch.models.message import Message
from deadswitch.schemas.condition import MessageCreate, MessageOut

router = APIRouter()


@router.post("/", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
def create_message(payload: MessageCreate, db: Session = Depends(get_db), identity=Depends(get_current_identity)):
    """Register a message owned by the caller (content is stored by the messages service)."""
    user_id, _roles = identity
    m = Message(user_id=user_id, title=payload.title, created_at=utcnow())
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


@router.get("/", response_model=list[MessageOut])
def list_messages(db: Session = Depends(get_db), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    return db.query(Message).filter(Message.user_id == user_id).order_by(Message.id).all()
