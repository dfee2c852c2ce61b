from fastapi import APIRouter, Depends, Request

from rapidgig_chat.utils.dependencies import get_current_user


router = APIRouter(prefix="/users", tags=["chat"])


@router.get("/{user_id}/presence")
async def presence(user_id: str, request: Request, current_user: dict = Depends(get_current_user)):
    """
    Online status comes from this process's live connections; last_seen from
    Redis when it is configured, else null.
    """
    online = request.app.state.coordinator.presence.is_online(user_id)
    last_seen = None if online else await request.app.state.last_seen.get(user_id)
    return {"user_id": user_id, "online": online, "last_seen": last_seen}
