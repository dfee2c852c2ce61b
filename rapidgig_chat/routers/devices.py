from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from rapidgig_chat.routers.notifications import get_notification_service
from rapidgig_chat.services.notification_service import NotificationService
from rapidgig_chat.utils.dependencies import get_current_user


router = APIRouter(prefix="/devices", tags=["push"])


class DeviceRegistration(BaseModel):

    platform: Literal["fcm", "webpush"]
    token: str = Field(min_length=1)


@router.post("/register")
async def register_device(payload: DeviceRegistration, current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    doc = await service.register_device(current_user["_id"], payload.platform, payload.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
