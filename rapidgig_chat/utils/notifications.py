import asyncio
from typing import Dict, List, Optional, Protocol

from pyfcm import FCMNotification

from rapidgig_chat.core.config import Settings
from rapidgig_chat.core.logging_config import get_logger

logger = get_logger(__name__)


class PushSender(Protocol):
    enabled: bool

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> List[str]:
        ...


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> List[str]:
        return []


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> List[str]:
        """Push to every token; returns the tokens that failed."""
        failed: List[str] = []
        for token in tokens:
            try:
                # pyfcm is sync
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload={k: str(v) for k, v in (data or {}).items()},
                )
            except Exception as exc:
                logger.warning("FCM push to %s... failed: %s", token[:12], exc)
                failed.append(token)
        return failed


def build_push(settings: Settings) -> PushSender:
    if not settings.fcm_service_account_file or not settings.fcm_project_id:
        return NoopPush()
    return FcmPush(settings.fcm_service_account_file, settings.fcm_project_id)
