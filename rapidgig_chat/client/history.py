from typing import Optional

import httpx

from rapidgig_chat.client.controller import HistoryPage


class HttpHistoryClient:
    """Fetches message pages from ``GET /conversations/{id}/messages``."""

    def __init__(self, client: httpx.AsyncClient, token: str) -> None:
        self._client = client
        self._headers = {"Authorization": f"Bearer {token}"}

    async def fetch_page(self, conversation_id: str, before: Optional[int], limit: int) -> HistoryPage:
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        response = await self._client.get(f"/conversations/{conversation_id}/messages", params=params, headers=self._headers)
        response.raise_for_status()
        body = response.json()
        return HistoryPage(items=body["items"], next_cursor=body.get("next_cursor"), has_more=bool(body.get("has_more")))
