from fastapi import APIRouter, Depends, Request

from rapidgig_chat.services.notification_service import NotificationService
from rapidgig_chat.utils.dependencies import get_current_user


router = APIRouter(prefix="/notifications", tags=["push"])


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


@router.get("")
async def list_notifications(current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    return {"items": await service.list_pending(current_user["_id"])}
