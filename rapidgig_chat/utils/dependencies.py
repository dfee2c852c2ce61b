from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rapidgig_chat.utils.security import identity_from_token

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict:
    # Raises AuthenticationError, rendered as 401 by the app's handler.
    token = credentials.credentials if credentials else None
    return {"_id": identity_from_token(token)}
