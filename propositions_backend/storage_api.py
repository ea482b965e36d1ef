"""
API endpoints for the remote propositions store.

Provides endpoints for:
- Reading and replacing the whole app-state document
- Reading and replacing settings
- Uploading and listing recorded audio clips
- Clearing everything

Every error response has the shape ``{"error": "<message>"}``.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from propositions_backend.db_session import get_async_session
from propositions_backend.services import storage_repository
from propositions_backend.services.entity_tree import DEFAULT_AUDIO_MIME_TYPE, now_ms

logger = logging.getLogger("propositions_backend")


class AudioRecord(BaseModel):
    """Response model for one stored audio clip."""
    id: str
    subtopicId: str
    propIndex: int
    audioIndex: int
    mimeType: str
    blobBase64: str
    timestamp: Optional[int] = None


class AudioListResponse(BaseModel):
    audios: List[AudioRecord]


router = APIRouter(prefix="/api/storage", tags=["storage"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def parse_index(value: Any, default: int = 0) -> int:
    """Integer from a number or numeric string; ``default`` otherwise."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value == value:
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


async def _json_object(request: Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get("/app-state")
async def get_app_state(db: AsyncSession = Depends(get_async_session)):
    try:
        state = await storage_repository.get_item(db, storage_repository.APP_STATE_KEY)
        return {"state": state}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to load app state: %s", exc)
        return _error(500, "Could not load the application state")


@router.put("/app-state")
async def put_app_state(request: Request, db: AsyncSession = Depends(get_async_session)):
    payload = await _json_object(request)
    if payload is None or "state" not in payload:
        return _error(400, "Invalid request: missing state to save")

    try:
        await storage_repository.put_item(db, storage_repository.APP_STATE_KEY, payload["state"])
        logger.info("[STORAGE API] Stored app state")
        return {"ok": True}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to save app state: %s", exc)
        return _error(500, "Could not save the application state")


@router.get("/settings")
async def get_settings(db: AsyncSession = Depends(get_async_session)):
    try:
        settings = await storage_repository.get_item(db, storage_repository.SETTINGS_KEY)
        return {"settings": settings}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to load settings: %s", exc)
        return _error(500, "Could not load settings")


@router.put("/settings")
async def put_settings(request: Request, db: AsyncSession = Depends(get_async_session)):
    payload = await _json_object(request)
    if payload is None or "settings" not in payload:
        return _error(400, "Invalid request: missing settings to save")

    try:
        await storage_repository.put_item(db, storage_repository.SETTINGS_KEY, payload["settings"])
        return {"ok": True}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to save settings: %s", exc)
        return _error(500, "Could not save settings")


@router.delete("")
async def clear_storage(db: AsyncSession = Depends(get_async_session)):
    try:
        await storage_repository.clear_all(db)
        return {"ok": True}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to clear storage: %s", exc)
        return _error(500, "Could not clear storage")


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------

@router.get("/audios", response_model=AudioListResponse)
async def list_audios(subtopicId: Optional[str] = None, db: AsyncSession = Depends(get_async_session)):
    try:
        blobs = await storage_repository.list_audio(db, subtopicId)
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to list audio for %s: %s", subtopicId, exc)
        return _error(500, "Could not load audio")

    return AudioListResponse(
        audios=[
            AudioRecord(
                id=blob.id,
                subtopicId=blob.subtopic_id,
                propIndex=blob.prop_index,
                audioIndex=blob.audio_index,
                mimeType=blob.mime_type,
                blobBase64=base64.b64encode(bytes(blob.data)).decode("ascii"),
                timestamp=blob.timestamp,
            )
            for blob in blobs
        ]
    )


@router.post("/audios", status_code=204)
async def upload_audio(request: Request, db: AsyncSession = Depends(get_async_session)):
    payload = await _json_object(request)
    if payload is None:
        return _error(400, "Invalid JSON body")
    if not payload.get("subtopicId"):
        return _error(400, "subtopicId is required")
    if not payload.get("blobBase64"):
        return _error(400, "blobBase64 is required")

    try:
        data = base64.b64decode(str(payload["blobBase64"]), validate=True)
    except (binascii.Error, ValueError):
        return _error(400, "blobBase64 is not valid base64")

    subtopic_id = str(payload["subtopicId"])
    prop_index = parse_index(payload.get("propIndex"))
    audio_index = parse_index(payload.get("audioIndex"))
    timestamp = payload.get("timestamp")

    try:
        blob_id = await storage_repository.upsert_audio(
            db,
            subtopic_id,
            prop_index,
            audio_index,
            data,
            payload.get("mimeType") or DEFAULT_AUDIO_MIME_TYPE,
            parse_index(timestamp, now_ms()) if timestamp is not None else now_ms(),
        )
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to store audio for %s: %s", subtopic_id, exc)
        return _error(500, "Could not store audio")

    logger.info("[STORAGE API] Stored audio %s (%s bytes)", blob_id, len(data))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Legacy and fallback resources
# ---------------------------------------------------------------------------

@router.get("/themes")
async def get_legacy_themes(db: AsyncSession = Depends(get_async_session)):
    try:
        data = await storage_repository.get_item(db, storage_repository.LEGACY_THEMES_KEY)
        return {"data": data or []}
    except Exception as exc:
        logger.exception("[STORAGE API] Failed to load legacy themes: %s", exc)
        return _error(500, "Could not load themes")


@router.post("/clear")
async def clear_storage_legacy(db: AsyncSession = Depends(get_async_session)):
    return await clear_storage(db)


@router.get("/{resource}")
async def unknown_resource(resource: str):
    return _error(404, "Unknown resource")


@router.api_route("/{resource}", methods=["POST", "PUT", "DELETE"])
async def unknown_resource_write(resource: str):
    return _error(404, "Unknown resource")
