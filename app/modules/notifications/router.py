import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.db import get_session
from app.core.security import get_principal, require_scopes, Principal
from app.modules.notifications.schemas import NotificationOut, UnreadCount, MarkAllReadResult
from app.modules.notifications.service import NotificationsService

router = APIRouter()
def svc(s: AsyncSession = Depends(get_session)) -> NotificationsService: return NotificationsService(s)

@router.get("/notifications", response_model=list[NotificationOut], dependencies=[Depends(require_scopes("notifications:read"))])
async def list_notifications(unread_only: bool = False, limit: int = Query(50, ge=1, le=200), principal: Principal = Depends(get_principal), service: NotificationsService = Depends(svc)):
    return await service.list_for_user(principal.org_id, principal.user_id, unread_only=unread_only, limit=limit)

@router.get("/notifications/unread-count", response_model=UnreadCount, dependencies=[Depends(require_scopes("notifications:read"))])
async def unread_count(principal: Principal = Depends(get_principal), service: NotificationsService = Depends(svc)):
    return UnreadCount(unread=await service.unread_count(principal.org_id, principal.user_id))

@router.post("/notifications/{notification_id}/read", response_model=NotificationOut, dependencies=[Depends(require_scopes("notifications:write"))])
async def mark_read(notification_id: uuid.UUID, principal: Principal = Depends(get_principal), service: NotificationsService = Depends(svc)):
    return await service.mark_read(principal.org_id, notification_id, principal.user_id)

@router.post("/notifications/read-all", response_model=MarkAllReadResult, dependencies=[Depends(require_scopes("notifications:write"))])
async def mark_all_read(principal: Principal = Depends(get_principal), service: NotificationsService = Depends(svc)):
    return MarkAllReadResult(updated=await service.mark_all_read(principal.org_id, principal.user_id))
