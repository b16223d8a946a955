from fastapi import APIRouter, Depends

from deadswitch.api.deps import get_condition_service, get_current_identity
from deadswitch.schemas.condition import CheckInBody, CheckInOut, NextDeadlineOut
from deadswitch.services.conditions import ConditionService

router = APIRouter()


@router.post("/", response_model=CheckInOut)
def check_in(
    payload: CheckInBody | None = None,
    service: ConditionService = Depends(get_condition_service),
    identity=Depends(get_current_identity),
):
    """Record a proof-of-life and push back every armed check-in deadline of the caller.

    A matching panic keyword also fires that panic message.
    """
    user_id, _roles = identity
    payload = payload or CheckInBody()
    return service.check_in(user_id, payload.method, payload.keyword)


@router.get("/next-deadline", response_model=NextDeadlineOut)
def next_deadline(service: ConditionService = Depends(get_condition_service), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    return NextDeadlineOut(deadline=service.next_check_in_deadline(user_id))
