"""Primary local store: one document per key in SQLite through SQLAlchemy async."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from propositions_backend.config import LOCAL_STORE_URL
from propositions_backend.db_session import build_engine, build_session_factory, create_tables
from propositions_backend.services import settings_service, storage_repository
from propositions_backend.services.backends.base import LegacyBundle, StorageBackend
from propositions_backend.services.entity_tree import AppState, AudioAsset
from propositions_backend.services.errors import BackendUnavailableError

logger = logging.getLogger("propositions_backend")


def _blob_to_asset(blob) -> AudioAsset:
    return AudioAsset(
        data=bytes(blob.data),
        mime_type=blob.mime_type or storage_repository.DEFAULT_MIME_TYPE,
        timestamp=blob.timestamp,
        subtopic_id=blob.subtopic_id,
        proposition_index=blob.prop_index,
        audio_index=blob.audio_index,
    )


class LocalStore(StorageBackend):
    name = "local"

    def __init__(self, url: str = LOCAL_STORE_URL):
        self.url = url
        self._engine = build_engine(url)
        self._sessions = build_session_factory(self._engine)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                await create_tables(self._engine)
                self._schema_ready = True

    @asynccontextmanager
    async def session(self):
        """Session on the local database; failures surface as ``BackendUnavailableError``."""
        try:
            await self._ensure_schema()
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("[LOCAL STORE] Database operation failed: %s", exc)
            raise BackendUnavailableError(self.name, str(exc)) from exc
        except OSError as exc:
            logger.exception("[LOCAL STORE] Database file unavailable: %s", exc)
            raise BackendUnavailableError(self.name, str(exc)) from exc

    async def load_state(self) -> Optional[Any]:
        async with self.session() as session:
            return await storage_repository.get_item(session, storage_repository.APP_STATE_KEY)

    async def save_state(self, state: AppState) -> None:
        document = state.to_dict()
        async with self.session() as session:
            await storage_repository.put_item(session, storage_repository.APP_STATE_KEY, document)
        logger.debug("[LOCAL STORE] Saved app state (era %s)", state.current_era.id)

    async def load_audio(self, subtopic_id: str) -> List[AudioAsset]:
        async with self.session() as session:
            blobs = await storage_repository.list_audio(session, subtopic_id)
            return [_blob_to_asset(blob) for blob in blobs]

    async def save_audio(self, asset: AudioAsset, era_id: Optional[str] = None) -> None:
        if not asset.subtopic_id:
            raise ValueError("Audio asset has no subtopic id")
        async with self.session() as session:
            await storage_repository.upsert_audio(
                session,
                asset.subtopic_id,
                asset.proposition_index or 0,
                asset.audio_index or 0,
                asset.data,
                asset.mime_type,
                asset.timestamp,
            )

    async def clear_all(self) -> None:
        async with self.session() as session:
            await storage_repository.clear_all(session)

    async def load_legacy(self) -> LegacyBundle:
        async with self.session() as session:
            raw = await storage_repository.get_item(session, storage_repository.LEGACY_THEMES_KEY)
            if not raw:
                raw = await storage_repository.get_item(session, storage_repository.LEGACY_SUBTOPICS_KEY)
            if not raw:
                return LegacyBundle()
            blobs = await storage_repository.list_audio(session)
            return LegacyBundle(raw=raw, audio=[_blob_to_asset(blob) for blob in blobs])

    async def load_settings(self) -> Dict[str, Any]:
        async with self.session() as session:
            return await settings_service.load_settings(session)

    async def save_settings(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session() as session:
            return await settings_service.save_settings(session, payload)

    async def close(self) -> None:
        await self._engine.dispose()
