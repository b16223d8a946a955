from fastapi import APIRouter

from deadswitch.api.routes import health, messages, conditions, check_ins, notifications, admin

api_router = APIRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])  # GET /
api_router.include_router(messages.router, prefix="/messages", tags=["messages"])  # POST /, GET /
api_router.include_router(conditions.router, prefix="/conditions", tags=["conditions"])  # CRUD, arm/disarm, schedule, panic
api_router.include_router(check_ins.router, prefix="/check-ins", tags=["check-ins"])  # POST /, GET /next-deadline
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])  # list, read, websocket
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])  # repair / force-process / failed list
