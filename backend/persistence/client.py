"""
HTTP client for the preset / recovery-state service.

    GET/PUT /api/state/latest     recovery cache (last confirmed config)
    GET     /api/configs          preset list
    GET/PUT /api/configs/<id>     one preset
    GET     /api/version          service version

Callers treat this service as best-effort: every failure is raised as
PersistenceError and it is up to them to log and continue.
"""

import asyncio
from typing import Any
from urllib.parse import quote

import aiohttp

from config.settings import get_settings
from core.errors import PersistenceError
from logger_config import get_logger

logger = get_logger("persistence")


class PersistenceClient:
    """Thin aiohttp wrapper; one ClientSession reused across requests."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        cfg = get_settings().persistence
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s if timeout_s is not None else cfg.timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, payload: Any = None, allow_missing: bool = False) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(method, url, json=payload) as response:
                if allow_missing and response.status == 404:
                    return None
                if response.status >= 400:
                    text = await response.text()
                    raise PersistenceError(
                        response.status,
                        f"{method} {path} failed: {response.status} {response.reason} {text[:200]}".rstrip(),
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PersistenceError(None, f"{method} {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise PersistenceError(None, f"{method} {path} timed out") from e
        except ValueError as e:
            raise PersistenceError(None, f"{method} {path} returned invalid JSON: {e}") from e

    # =========================================================================
    # Recovery cache
    # =========================================================================

    async def get_latest_state(self) -> dict | None:
        """The last confirmed configuration, or None if nothing is stored."""
        return await self._request("GET", "/api/state/latest", allow_missing=True)

    async def put_latest_state(self, snapshot: dict):
        await self._request("PUT", "/api/state/latest", snapshot)
        logger.debug("Latest state persisted")

    # =========================================================================
    # Presets
    # =========================================================================

    async def list_presets(self) -> list[dict]:
        return await self._request("GET", "/api/configs") or []

    async def get_preset(self, preset_id: str) -> dict:
        return await self._request("GET", f"/api/configs/{quote(preset_id, safe='')}")

    async def put_preset(self, preset_id: str, document: dict):
        await self._request("PUT", f"/api/configs/{quote(preset_id, safe='')}", document)

    async def get_server_version(self) -> str | None:
        info = await self._request("GET", "/api/version")
        return info.get("version") if isinstance(info, dict) else None
