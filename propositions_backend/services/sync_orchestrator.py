"""
Sequencing of the primary, mirror and remote stores.

Load precedence, first success wins:

1. primary local store;
2. mirror snapshot (only consulted when the primary has no current-schema
   state, or when ``prefer_newer`` is on and no pending-write hint is given);
3. legacy migration over whatever the primary, then the mirror, exposes;
   the migrated state is written back to the primary once;
4. the built-in sample state.

A ``LoadHint`` with ``pending_external_write`` pins the primary even when a
newer mirror snapshot exists, since an externally initiated write landed
there. Saves await the primary before touching the mirror; the remote store
is only written through ``save_remote``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from propositions_backend.config import (
    LOCAL_STORE_URL,
    MIRROR_DIR,
    REMOTE_STORE_TIMEOUT_SECONDS,
    REMOTE_STORE_TOKEN,
    REMOTE_STORE_URL,
    SYNC_PREFER_NEWER,
)
from propositions_backend.services.backends.base import StorageBackend
from propositions_backend.services.backends.local_store import LocalStore
from propositions_backend.services.backends.mirror_store import MirrorStore, MirrorWriteReport
from propositions_backend.services.backends.remote_store import RemoteStore
from propositions_backend.services.entity_tree import (
    EXTERNAL_THEME_ID,
    AppState,
    create_sample_state,
    now_ms,
)
from propositions_backend.services.errors import BackendUnavailableError, LegacyDataError
from propositions_backend.services.legacy_migration import CurrentSnapshot, classify_snapshot, migrate_legacy
from propositions_backend.services.merge_engine import (
    ExternalSubtopicPayload,
    MergeOutcome,
    prepare_state_for_external,
    upsert_external_subtopic,
)

logger = logging.getLogger("propositions_backend")

SOURCE_PRIMARY = "primary"
SOURCE_MIRROR = "mirror"
SOURCE_MIGRATION = "migration"
SOURCE_DEFAULT = "default"
SOURCE_REMOTE = "remote"


@dataclass
class LoadHint:
    pending_external_write: bool = False
    subtopic_id: Optional[str] = None


@dataclass
class LoadResult:
    state: AppState
    source: str
    migrated: bool = False
    warnings: List[str] = field(default_factory=list)
    generation: int = 0
    applied: bool = True


@dataclass
class SaveReport:
    primary_ok: bool = False
    mirror_ok: Optional[bool] = None
    remote_ok: Optional[bool] = None
    mirror_report: Optional[MirrorWriteReport] = None
    warnings: List[str] = field(default_factory=list)


class SyncOrchestrator:
    def __init__(
        self,
        primary: StorageBackend,
        mirror: Optional[StorageBackend] = None,
        remote: Optional[StorageBackend] = None,
        clock: Callable[[], int] = now_ms,
        prefer_newer: bool = SYNC_PREFER_NEWER,
    ):
        self.primary = primary
        self.mirror = mirror
        self.remote = remote
        self.clock = clock
        self.prefer_newer = prefer_newer
        self.current_state: Optional[AppState] = None
        self._generation = 0
        self._ingest_lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    # -- load -------------------------------------------------------------

    async def _read_state(self, backend: StorageBackend, warnings: List[str]) -> Optional[AppState]:
        try:
            raw = await backend.load_state()
        except BackendUnavailableError as exc:
            logger.warning("[SYNC] %s store unavailable during load: %s", backend.name, exc)
            warnings.append(str(exc))
            return None

        if raw is None:
            return None

        try:
            snapshot = classify_snapshot(raw, self.clock())
        except (LegacyDataError, TypeError, ValueError) as exc:
            logger.warning("[SYNC] %s store holds an unreadable app state: %s", backend.name, exc)
            warnings.append(f"[{backend.name}] {exc}")
            return None

        if isinstance(snapshot, CurrentSnapshot):
            return snapshot.state
        logger.warning("[SYNC] %s store app-state is not current-schema; ignoring it", backend.name)
        return None

    async def _migrate(self, warnings: List[str]) -> Optional[LoadResult]:
        for backend in (self.primary, self.mirror):
            if backend is None:
                continue
            try:
                bundle = await backend.load_legacy()
            except BackendUnavailableError as exc:
                logger.warning("[SYNC] %s store unavailable for legacy read: %s", backend.name, exc)
                warnings.append(str(exc))
                continue
            if bundle.is_empty:
                continue

            logger.info("[SYNC] Migrating legacy data found in %s store", backend.name)
            state = migrate_legacy(bundle.raw, bundle.audio, self.clock())
            try:
                await self.primary.save_state(state)
            except BackendUnavailableError as exc:
                logger.warning("[SYNC] Could not persist migrated state: %s", exc)
                warnings.append(str(exc))
            return LoadResult(state=state, source=SOURCE_MIGRATION, migrated=True, warnings=warnings)
        return None

    async def _resolve(self, hint: Optional[LoadHint]) -> LoadResult:
        warnings: List[str] = []
        pinned = bool(hint and hint.pending_external_write)

        primary_state = await self._read_state(self.primary, warnings)

        if primary_state is not None and (pinned or not self.prefer_newer or self.mirror is None):
            return LoadResult(state=primary_state, source=SOURCE_PRIMARY, warnings=warnings)

        if self.mirror is not None:
            mirror_state = await self._read_state(self.mirror, warnings)
            if mirror_state is not None:
                if primary_state is None:
                    return LoadResult(state=mirror_state, source=SOURCE_MIRROR, warnings=warnings)
                if mirror_state.current_era.updated_at > primary_state.current_era.updated_at:
                    logger.info("[SYNC] Mirror snapshot is newer than primary; using mirror")
                    return LoadResult(state=mirror_state, source=SOURCE_MIRROR, warnings=warnings)
            if primary_state is not None:
                return LoadResult(state=primary_state, source=SOURCE_PRIMARY, warnings=warnings)

        migrated = await self._migrate(warnings)
        if migrated is not None:
            return migrated

        logger.info("[SYNC] No stored data found; bootstrapping sample state")
        return LoadResult(state=create_sample_state(self.clock()), source=SOURCE_DEFAULT, warnings=warnings)

    async def load(self, hint: Optional[LoadHint] = None) -> LoadResult:
        """Resolve the state to use. A load superseded by a later one is returned with ``applied=False``."""
        self._generation += 1
        generation = self._generation

        result = await self._resolve(hint)
        result.generation = generation

        if generation != self._generation:
            logger.info("[SYNC] Load %s superseded by load %s; discarding its result", generation, self._generation)
            result.applied = False
            return result

        self.current_state = result.state
        logger.info("[SYNC] Loaded state from %s (generation %s)", result.source, generation)
        return result

    # -- save -------------------------------------------------------------

    async def save(self, state: AppState) -> SaveReport:
        """Persist to primary, then mirror. Failures become warnings; ``state`` stays current."""
        self.current_state = state
        report = SaveReport()

        try:
            await self.primary.save_state(state)
            report.primary_ok = True
        except BackendUnavailableError as exc:
            logger.warning("[SYNC] Primary save failed: %s", exc)
            report.warnings.append(str(exc))

        if self.mirror is not None:
            try:
                mirror_report = await self.mirror.save_state(state)
            except BackendUnavailableError as exc:
                logger.warning("[SYNC] Mirror save failed: %s", exc)
                report.mirror_ok = False
                report.warnings.append(str(exc))
            else:
                if isinstance(mirror_report, MirrorWriteReport):
                    report.mirror_report = mirror_report
                    report.mirror_ok = mirror_report.ok
                    for filename, error in mirror_report.failed.items():
                        report.warnings.append(f"[{self.mirror.name}] {filename}: {error}")
                else:
                    report.mirror_ok = True

        return report

    # -- remote -----------------------------------------------------------

    def _require_remote(self) -> StorageBackend:
        if self.remote is None:
            raise BackendUnavailableError("remote", "Remote store is not configured.")
        return self.remote

    async def save_remote(self, state: Optional[AppState] = None) -> SaveReport:
        remote = self._require_remote()
        target = state or self.current_state
        report = SaveReport(primary_ok=True)
        if target is None:
            report.remote_ok = False
            report.warnings.append("[remote] Nothing loaded to upload.")
            return report
        try:
            await remote.save_state(target)
            report.remote_ok = True
        except BackendUnavailableError as exc:
            logger.warning("[SYNC] Remote save failed: %s", exc)
            report.remote_ok = False
            report.warnings.append(str(exc))
        return report

    async def load_remote(self) -> Optional[LoadResult]:
        """Replace the current state with the remote copy and persist it locally. None when remote is empty."""
        remote = self._require_remote()
        self._generation += 1
        generation = self._generation
        warnings: List[str] = []

        raw = await remote.load_state()
        if raw is None:
            return None
        try:
            snapshot = classify_snapshot(raw, self.clock())
        except LegacyDataError as exc:
            raise BackendUnavailableError(remote.name, f"Remote app state is unreadable: {exc}") from exc

        if isinstance(snapshot, CurrentSnapshot):
            state, migrated = snapshot.state, False
        else:
            state, migrated = migrate_legacy(raw, (), self.clock()), True

        if generation != self._generation:
            return LoadResult(
                state=state, source=SOURCE_REMOTE, migrated=migrated, generation=generation, applied=False
            )

        save_report = await self.save(state)
        warnings.extend(save_report.warnings)
        return LoadResult(state=state, source=SOURCE_REMOTE, migrated=migrated, warnings=warnings, generation=generation)

    # -- external ingestion -----------------------------------------------

    async def apply_external_subtopic(
        self,
        payload: ExternalSubtopicPayload,
        theme_id: str = EXTERNAL_THEME_ID,
    ) -> MergeOutcome:
        """Load with the pending-write hint, upsert ``payload`` and save when anything changed.

        Ingestions run one at a time. When another load supersedes this one the
        upsert is applied to the newer current state instead of the stale result.
        """
        async with self._ingest_lock:
            result = await self.load(LoadHint(pending_external_write=True, subtopic_id=payload.id))
            base_state = result.state
            if not result.applied and self.current_state is not None:
                logger.info("[SYNC] Load for subtopic %s was superseded; merging into the newer state", payload.id)
                base_state = self.current_state

            base = prepare_state_for_external(base_state, self.clock())
            outcome = upsert_external_subtopic(base, payload, theme_id=theme_id, now=self.clock())
            if outcome.created or outcome.updated:
                await self.save(outcome.state)
            else:
                self.current_state = outcome.state
            return outcome

    async def close(self) -> None:
        for backend in (self.primary, self.mirror, self.remote):
            if backend is not None:
                await backend.close()


def build_orchestrator(
    local_url: str = LOCAL_STORE_URL,
    mirror_dir: Optional[str] = MIRROR_DIR,
    remote_url: Optional[str] = REMOTE_STORE_URL,
    remote_token: Optional[str] = REMOTE_STORE_TOKEN,
) -> SyncOrchestrator:
    """Wire the configured backends. Mirror and remote are optional."""
    mirror = MirrorStore(mirror_dir) if mirror_dir else None
    remote = (
        RemoteStore(remote_url, timeout_seconds=REMOTE_STORE_TIMEOUT_SECONDS, auth_token=remote_token)
        if remote_url
        else None
    )
    logger.info(
        "[SYNC] Backends: local=%s, mirror=%s, remote=%s",
        local_url,
        mirror_dir or "disabled",
        remote_url or "disabled",
    )
    return SyncOrchestrator(LocalStore(local_url), mirror=mirror, remote=remote)
