"""HTTP client for the remote relational store exposed by ``storage_api``."""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import httpx

from propositions_backend.config import REMOTE_STORE_TIMEOUT_SECONDS
from propositions_backend.services.backends.base import StorageBackend
from propositions_backend.services.entity_tree import DEFAULT_AUDIO_MIME_TYPE, AppState, AudioAsset
from propositions_backend.services.errors import BackendUnavailableError

logger = logging.getLogger("propositions_backend")

STORAGE_PREFIX = "/api/storage"


class RemoteStore(StorageBackend):
    name = "remote"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = REMOTE_STORE_TIMEOUT_SECONDS,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.auth_token = auth_token
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else None
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers=headers,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        url = f"{STORAGE_PREFIX}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                if response.status_code == 204 or not response.content:
                    return None
                return response.json()
        except httpx.TimeoutException as exc:
            logger.warning("[REMOTE STORE] %s %s timed out after %ss", method, url, self.timeout_seconds)
            raise BackendUnavailableError(self.name, f"{method} {url} timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "[REMOTE STORE] %s %s failed with status %s: %s",
                method,
                url,
                exc.response.status_code,
                exc.response.text,
            )
            raise BackendUnavailableError(
                self.name, f"{method} {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("[REMOTE STORE] %s %s failed: %s", method, url, exc)
            raise BackendUnavailableError(self.name, f"{method} {url} failed: {exc}") from exc
        except ValueError as exc:
            raise BackendUnavailableError(self.name, f"{method} {url} returned invalid JSON: {exc}") from exc

    async def load_state(self) -> Optional[Any]:
        payload = await self._request("GET", "/app-state")
        return (payload or {}).get("state")

    async def save_state(self, state: AppState) -> None:
        await self._request("PUT", "/app-state", json={"state": state.to_dict()})
        logger.info("[REMOTE STORE] Uploaded app state (era %s)", state.current_era.id)

    async def load_settings(self) -> Optional[Dict[str, Any]]:
        payload = await self._request("GET", "/settings")
        return (payload or {}).get("settings")

    async def save_settings(self, settings: Dict[str, Any]) -> None:
        await self._request("PUT", "/settings", json={"settings": settings})

    async def load_audio(self, subtopic_id: str) -> List[AudioAsset]:
        payload = await self._request("GET", "/audios", params={"subtopicId": subtopic_id})
        assets = []
        for row in (payload or {}).get("audios") or []:
            try:
                data = base64.b64decode(row.get("blobBase64") or "", validate=True)
            except (binascii.Error, ValueError) as exc:
                raise BackendUnavailableError(self.name, f"Audio {row.get('id')} is not valid base64") from exc
            assets.append(
                AudioAsset(
                    data=data,
                    mime_type=row.get("mimeType") or DEFAULT_AUDIO_MIME_TYPE,
                    timestamp=row.get("timestamp"),
                    subtopic_id=row.get("subtopicId"),
                    proposition_index=row.get("propIndex"),
                    audio_index=row.get("audioIndex"),
                )
            )
        return assets

    async def save_audio(self, asset: AudioAsset, era_id: Optional[str] = None) -> None:
        if not asset.subtopic_id:
            raise ValueError("Audio asset has no subtopic id")
        await self._request(
            "POST",
            "/audios",
            json={
                "subtopicId": asset.subtopic_id,
                "propIndex": asset.proposition_index or 0,
                "audioIndex": asset.audio_index or 0,
                "mimeType": asset.mime_type,
                "blobBase64": base64.b64encode(asset.data).decode("ascii"),
                "timestamp": asset.timestamp,
            },
        )

    async def clear_all(self) -> None:
        await self._request("DELETE", "")
