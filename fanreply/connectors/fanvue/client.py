# fanreply/connectors/fanvue/client.py
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from fanreply.connectors.fanvue.oauth import FanvueOAuth
from fanreply.core.config import Settings, settings as default_settings
from fanreply.core.errors import NotConnected, PlatformApiError
from fanreply.core.logging import preview

logger = logging.getLogger("fanreply.fanvue.client")


@dataclass
class Page:
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


def _error_message(resp: httpx.Response) -> str:
    text = resp.text
    try:
        data = json.loads(text)
    except ValueError:
        return text or f"Fanvue API error: {resp.status_code}"
    if isinstance(data, dict):
        for key in ("message", "error_description", "error"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    return text or f"Fanvue API error: {resp.status_code}"


def _page(body: Dict[str, Any]) -> Page:
    pagination = body.get("pagination") or {}
    return Page(items=body.get("data") or [], next_cursor=pagination.get("nextCursor"))


def _params(**values: Any) -> Dict[str, str]:
    return {k: str(v) for k, v in values.items() if v is not None}


class FanvueClient:
    """Authenticated wrapper around the Fanvue REST API, scoped per creator."""

    def __init__(
        self,
        oauth: FanvueOAuth,
        settings: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.oauth = oauth
        self.settings = settings
        self._transport = transport

    async def request(
        self,
        creator_id: int,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self.oauth.get_valid_token(creator_id)
        if not token:
            raise NotConnected(creator_id)

        headers = {
            "Authorization": f"Bearer {token}",
            "X-Fanvue-API-Version": self.settings.fanvue_api_version,
            "Accept": "application/json",
        }
        url = f"{self.settings.fanvue_api_base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.settings.platform_timeout_seconds, transport=self._transport) as client:
                resp = await client.request(method, url, params=params, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Fanvue API %s %s failed: %s", method, path, exc)
            raise PlatformApiError(None, f"Fanvue API unreachable: {exc}") from exc

        if not resp.is_success:
            message = _error_message(resp)
            logger.error("Fanvue API error [%s] %s %s: %s", resp.status_code, method, path, message)
            raise PlatformApiError(resp.status_code, message)
        if not resp.content:
            return {}
        return resp.json()

    # --- chats ---

    async def list_chats(
        self, creator_id: int, limit: int = 20, cursor: Optional[str] = None, filter: Optional[str] = None
    ) -> Page:
        body = await self.request(creator_id, "GET", "/chats", params=_params(limit=limit, cursor=cursor, filter=filter))
        return _page(body)

    async def list_messages(
        self, creator_id: int, fan_uuid: str, limit: int = 50, cursor: Optional[str] = None, before: Optional[str] = None
    ) -> Page:
        body = await self.request(
            creator_id, "GET", f"/chats/{fan_uuid}/messages", params=_params(limit=limit, cursor=cursor, before=before)
        )
        return _page(body)

    async def send_message(
        self,
        creator_id: int,
        fan_uuid: str,
        text: str,
        price: Optional[float] = None,
        media_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": text}
        if price:
            payload["price"] = price
        if media_ids:
            payload["mediaIds"] = media_ids
        logger.info("Sending Fanvue message creator=%s fan=%s text=%r", creator_id, fan_uuid, preview(text))
        body = await self.request(creator_id, "POST", f"/chats/{fan_uuid}/message", body=payload)
        return body.get("data") or body

    async def send_mass_message(
        self,
        creator_id: int,
        text: str,
        price: Optional[float] = None,
        media_ids: Optional[List[str]] = None,
        target_user_uuids: Optional[List[str]] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": text}
        if price:
            payload["price"] = price
        if media_ids:
            payload["mediaIds"] = media_ids
        if target_user_uuids:
            payload["targetUserUuids"] = target_user_uuids
        if filters:
            payload["filters"] = filters
        body = await self.request(creator_id, "POST", "/chats/mass-messages", body=payload)
        return body.get("data") or body

    # --- subscribers ---

    async def list_subscribers(
        self,
        creator_id: int,
        limit: int = 20,
        cursor: Optional[str] = None,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
    ) -> Page:
        body = await self.request(
            creator_id, "GET", "/subscribers", params=_params(limit=limit, cursor=cursor, status=status, sortBy=sort_by)
        )
        return _page(body)

    async def get_subscriber(self, creator_id: int, fan_uuid: str) -> Dict[str, Any]:
        body = await self.request(creator_id, "GET", f"/subscribers/{fan_uuid}")
        return body.get("data") or body

    # --- self ---

    async def get_profile(self, creator_id: int) -> Dict[str, Any]:
        body = await self.request(creator_id, "GET", "/self")
        return body.get("data") or body
