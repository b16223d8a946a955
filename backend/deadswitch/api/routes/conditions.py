from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, status

from deadswitch.api.deps import get_condition_service, get_current_identity
from deadswitch.schemas.condition import (
    ArmOut,
    ConditionCreate,
    ConditionOut,
    ConditionUpdate,
    DisarmOut,
    PanicBody,
    PanicOut,
    ScheduleEntryOut,
)
from deadswitch.services.conditions import ConditionService

router = APIRouter()


def _out(service: ConditionService, condition_id: int) -> ConditionOut:
    return ConditionOut(**asdict(service.view(condition_id)))


@router.post("/", response_model=ConditionOut, status_code=status.HTTP_201_CREATED)
def create_condition(
    payload: ConditionCreate,
    service: ConditionService = Depends(get_condition_service),
    identity=Depends(get_current_identity),
):
    """Attach a release condition to one of the caller's messages (optionally arming it right away)."""
    user_id, _roles = identity
    condition = service.create(user_id, payload.message_id, payload.config(), arm=payload.arm)
    return _out(service, condition.id)


@router.post("/panic", response_model=PanicOut)
def trigger_panic(
    payload: PanicBody,
    service: ConditionService = Depends(get_condition_service),
    identity=Depends(get_current_identity),
):
    user_id, _roles = identity
    delivery_at = service.trigger_panic(user_id, payload.message_id)
    return PanicOut(message_id=payload.message_id, delivery_at=delivery_at)


@router.get("/{condition_id}", response_model=ConditionOut)
def get_condition(condition_id: int, service: ConditionService = Depends(get_condition_service), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    service.get_owned(condition_id, user_id)
    return _out(service, condition_id)


@router.patch("/{condition_id}", response_model=ConditionOut)
def update_condition(
    condition_id: int,
    payload: ConditionUpdate,
    service: ConditionService = Depends(get_condition_service),
    identity=Depends(get_current_identity),
):
    user_id, _roles = identity
    service.get_owned(condition_id, user_id)
    changes = payload.config()
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
    service.update_config(condition_id, changes)
    return _out(service, condition_id)


@router.post("/{condition_id}/arm", response_model=ArmOut)
def arm_condition(condition_id: int, service: ConditionService = Depends(get_condition_service), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    service.get_owned(condition_id, user_id)
    deadline = service.arm(condition_id)
    return ArmOut(id=condition_id, active=True, deadline=deadline)


@router.post("/{condition_id}/disarm", response_model=DisarmOut)
def disarm_condition(condition_id: int, service: ConditionService = Depends(get_condition_service), identity=Depends(get_current_identity)):
    user_id, _roles = identity
    service.get_owned(condition_id, user_id)
    result = service.disarm(condition_id)
    return DisarmOut(id=condition_id, active=False, cancelled=len(result.cancelled))


@router.get("/{condition_id}/schedule", response_model=list[ScheduleEntryOut])
def get_schedule(condition_id: int, service: ConditionService = Depends(get_condition_service), identity=Depends(get_current_identity)):
    """Pending reminder rows of the condition, earliest first."""
    user_id, _roles = identity
    service.get_owned(condition_id, user_id)
    return service.upcoming_reminders(condition_id)
