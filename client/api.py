"""HTTP client for the messaging API."""
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class MessagingAPIError(Exception):
    def __init__(self, status_code: int, code: Optional[str], detail: Any):
        self.status_code = status_code
        self.detail = detail
        self.code = code
        super().__init__(f"{status_code} {code or ''} {detail}".strip())


class MessagingClient:
    """
    Thin synchronous wrapper over the REST endpoints.

    Pass ``http`` to reuse an existing ``httpx.Client`` (or a Starlette
    ``TestClient``); otherwise one is created for ``base_url``.
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.token = token
        self._owns_http = http is None
        self._http = http if http is not None else httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self._http.request(method, path, headers=self._headers(), **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.debug(f"{method} {path} failed with {response.status_code}: {detail}")
            raise MessagingAPIError(
                response.status_code, response.headers.get("X-Error-Code"), detail
            )
        return response.json()

    # --- Conversations ---

    def list_conversations(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        return self._request("GET", "/conversations", params={"page": page, "limit": limit})

    def search_conversations(self, query: str) -> Dict[str, Any]:
        return self._request("GET", "/conversations/search", params={"q": query})

    def create_direct_conversation(self, user_id: int) -> Dict[str, Any]:
        return self._request("POST", "/conversations", json={"user_id": user_id})

    def create_group_conversation(self, group_name: str, member_ids: List[int]) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/conversations",
            json={"is_group": True, "group_name": group_name, "member_ids": member_ids},
        )

    def get_conversation(self, conversation_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        return self._request(
            "GET", f"/conversations/{conversation_id}", params={"page": page, "limit": limit}
        )

    def mark_conversation_read(self, conversation_id: str) -> Dict[str, Any]:
        return self._request("PUT", f"/conversations/{conversation_id}/read")

    def add_members(self, conversation_id: str, user_ids: List[int]) -> Dict[str, Any]:
        return self._request(
            "POST", f"/conversations/{conversation_id}/members", json={"user_ids": user_ids}
        )

    def remove_member(self, conversation_id: str, user_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/conversations/{conversation_id}/members/{user_id}")

    def archive_conversation(self, conversation_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/conversations/{conversation_id}/archive")

    # --- Messages ---

    def send_message(
        self,
        conversation_id: str,
        message_text: str,
        *,
        message_type: str = "text",
        media_url: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        reply_to: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message_text": message_text, "message_type": message_type}
        if media_url:
            body["media_url"] = media_url
        if location:
            body["location"] = location
        if reply_to:
            body["reply_to"] = reply_to
        if client_message_id:
            body["client_message_id"] = client_message_id
        return self._request("POST", f"/conversations/{conversation_id}/messages", json=body)

    def mark_message_read(self, message_id: str) -> Dict[str, Any]:
        return self._request("PUT", f"/messages/{message_id}/read")

    def delete_message(self, message_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/messages/{message_id}")

    def add_reaction(self, message_id: str, emoji: str) -> Dict[str, Any]:
        return self._request("POST", f"/messages/{message_id}/reactions", json={"emoji": emoji})

    def remove_reaction(self, message_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/messages/{message_id}/reactions")

    def unread_count(self) -> int:
        return self._request("GET", "/unread-count")["unread_count"]
