"""Key/document and audio-row persistence over an ``AsyncSession``."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from propositions_backend.models import AudioBlob, StorageItem, audio_blob_id

logger = logging.getLogger("propositions_backend")

APP_STATE_KEY = "app-state"
SETTINGS_KEY = "settings"
LEGACY_THEMES_KEY = "themes"
LEGACY_SUBTOPICS_KEY = "subtopics"

DEFAULT_MIME_TYPE = "audio/webm"


async def get_item(session: AsyncSession, key: str) -> Optional[Any]:
    result = await session.execute(select(StorageItem).where(StorageItem.key == key))
    item = result.scalar_one_or_none()
    return item.data if item else None


async def put_item(session: AsyncSession, key: str, data: Any) -> None:
    existing = await session.get(StorageItem, key)
    if existing:
        existing.data = data
        existing.updated_at = datetime.now(timezone.utc)
    else:
        session.add(StorageItem(key=key, data=data))
    await session.commit()


async def upsert_audio(
    session: AsyncSession,
    subtopic_id: str,
    prop_index: int,
    audio_index: int,
    data: bytes,
    mime_type: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    blob_id = audio_blob_id(subtopic_id, prop_index, audio_index)
    existing = await session.get(AudioBlob, blob_id)
    if existing:
        existing.data = data
        existing.mime_type = mime_type or DEFAULT_MIME_TYPE
        existing.timestamp = timestamp
    else:
        session.add(
            AudioBlob(
                id=blob_id,
                subtopic_id=subtopic_id,
                prop_index=prop_index,
                audio_index=audio_index,
                mime_type=mime_type or DEFAULT_MIME_TYPE,
                data=data,
                timestamp=timestamp,
            )
        )
    await session.commit()
    return blob_id


async def list_audio(session: AsyncSession, subtopic_id: Optional[str] = None) -> List[AudioBlob]:
    stmt = select(AudioBlob)
    if subtopic_id:
        stmt = stmt.where(AudioBlob.subtopic_id == subtopic_id)
    stmt = stmt.order_by(AudioBlob.subtopic_id, AudioBlob.prop_index, AudioBlob.audio_index)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def clear_all(session: AsyncSession) -> None:
    await session.execute(delete(AudioBlob))
    await session.execute(delete(StorageItem))
    await session.commit()
    logger.info("[STORAGE] Cleared all documents and audio rows")
