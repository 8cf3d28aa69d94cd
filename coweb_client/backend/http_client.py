"""HTTP client helpers for the coweb admin and credential endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from ..config import Settings
from ..errors import TransportError

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json;charset=UTF-8"}


class CowebHttpClient:
    """Thin wrapper around the coweb server REST API."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.server_url,
            timeout=self.settings.transport.http_timeout,
        )

    async def login(self, username: str, password: str) -> httpx.Response:
        """POST credentials and hand back the raw response."""
        logger.info("coweb.login: submitting credentials for %s", username)
        try:
            return await self._client.post(
                self.settings.login_url,
                json={"username": username, "password": password},
                headers=JSON_HEADERS,
            )
        except httpx.HTTPError as e:
            logger.error("coweb.login: request failed - %s", e)
            raise

    async def logout(self) -> httpx.Response:
        logger.info("coweb.logout: dropping credentials")
        try:
            return await self._client.get(self.settings.logout_url)
        except httpx.HTTPError as e:
            logger.error("coweb.logout: request failed - %s", e)
            raise

    async def prepare(self, key: str, collab: bool) -> Dict[str, Any]:
        """Ask the admin endpoint for the session serving ``key``."""
        try:
            payload = {"key": key, "collab": collab}
            logger.info("coweb.prepare: requesting session for key=%s collab=%s", key, collab)
            response = await self._client.post(self.settings.admin_url, json=payload, headers=JSON_HEADERS)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error("coweb.prepare: request timeout")
            raise TransportError("server-unavailable", detail="timeout") from e
        except httpx.NetworkError as e:
            logger.error("coweb.prepare: network error - %s", e)
            raise TransportError("server-unavailable", detail=str(e)) from e
        except httpx.HTTPStatusError as e:
            logger.error("coweb.prepare: HTTP %d - %s", e.response.status_code, e.response.text)
            tag = "not-allowed" if e.response.status_code in (401, 403) else "server-error"
            raise TransportError(tag, detail=f"HTTP {e.response.status_code}") from e
        except ValueError as e:
            logger.error("coweb.prepare: undecodable response - %s", e)
            raise TransportError("bad-server-response", detail=str(e)) from e
        except Exception as e:
            logger.exception("coweb.prepare: unexpected error - %s", e)
            raise TransportError("server-unavailable", detail=str(e)) from e

        if not isinstance(data, dict) or not data.get("sessionurl"):
            logger.error("coweb.prepare: response missing sessionurl %s", data)
            raise TransportError("bad-server-response", detail="missing sessionurl")
        return data

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


__all__ = ["CowebHttpClient"]
