from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from deadswitch.api.deps import require_roles
from deadswitch.db.session import get_db
from deadswitch.schemas.condition import ScheduleEntryOut
from deadswitch.services.dispatcher import Dispatcher
from deadswitch.services.sender import build_sender
from deadswitch.services.stores import ScheduleStore

router = APIRouter(dependencies=[Depends(require_roles("admin"))])


def _dispatcher(request: Request, db: Session) -> Dispatcher:
    state = request.app.state
    return Dispatcher(db, build_sender(db), state.events, getattr(state, "cache", None))


@router.post("/reminders/reset-stuck", response_model=dict)
def reset_stuck(request: Request, db: Session = Depends(get_db)):
    """Repair armed conditions whose reminder rows drifted (failed finals, overdue pendings, missing finals)."""
    return _dispatcher(request, db).reset_stuck_reminders()


@router.post("/conditions/{condition_id}/force-process", response_model=dict)
def force_process(condition_id: int, request: Request, db: Session = Depends(get_db)):
    report = _dispatcher(request, db).force_process_condition(condition_id)
    return report.as_dict()


@router.get("/reminders/failed", response_model=list[ScheduleEntryOut])
def list_failed(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db)):
    """Entries that ran out of retries, final deliveries first."""
    return ScheduleStore(db).list_failed(limit=limit)
