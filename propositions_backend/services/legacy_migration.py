"""
Upgrade of snapshots written by the two pre-era schema generations.

Raw persisted data is classified exactly once into a tagged snapshot type.
Only ``CurrentSnapshot`` carries a typed ``AppState``; the legacy variants
hold the raw records and are consumed by ``migrate_legacy``, which is the
only place untyped legacy JSON is interpreted.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Union

from propositions_backend.services.entity_tree import (
    DEFAULT_LABELS,
    AppState,
    AudioAsset,
    Era,
    Proposition,
    PropositionType,
    Subtopic,
    Theme,
    create_sample_state,
    is_current_schema,
    now_ms,
)
from propositions_backend.services.errors import LegacyDataError
from propositions_backend.services.identity import ensure_id, fallback_id

logger = logging.getLogger("propositions_backend")

LEGACY_THEME_ID = "legacy-theme"
LEGACY_THEME_NAME = "Tema migrado"
MIGRATED_ERA_NAME = "Ciclo migrado"


@dataclass
class CurrentSnapshot:
    state: AppState


@dataclass
class LegacyThemes:
    themes: List[Any]


@dataclass
class LegacySubtopics:
    subtopics: List[Any]


@dataclass
class EmptySnapshot:
    pass


Snapshot = Union[CurrentSnapshot, LegacyThemes, LegacySubtopics, EmptySnapshot]

# subtopic id -> proposition index -> audios ordered by audio index
AudioGroups = Dict[str, Dict[int, List[AudioAsset]]]


def classify_snapshot(raw: Any, now: Optional[int] = None) -> Snapshot:
    """Tag ``raw``. Raises ``LegacyDataError`` if a current-schema document is malformed."""
    if raw is None:
        return EmptySnapshot()

    if is_current_schema(raw):
        return CurrentSnapshot(state=AppState.from_dict(raw, now))

    if isinstance(raw, dict) and isinstance(raw.get("themes"), list):
        raw = raw["themes"]

    if not isinstance(raw, list) or not raw:
        return EmptySnapshot()

    first = raw[0]
    if isinstance(first, dict) and "name" in first:
        return LegacyThemes(themes=list(raw))
    return LegacySubtopics(subtopics=list(raw))


def group_legacy_audio(rows: Iterable[AudioAsset]) -> AudioGroups:
    """Regroup flat legacy audio rows by subtopic, then proposition index, ordered by audio index."""
    buckets: Dict[str, Dict[int, List[AudioAsset]]] = defaultdict(lambda: defaultdict(list))
    for row in rows:
        if not row.subtopic_id:
            logger.debug("[MIGRATION] Skipping legacy audio row without subtopic id")
            continue
        buckets[row.subtopic_id][row.proposition_index or 0].append(row)

    grouped: AudioGroups = {}
    for subtopic_id, by_prop in buckets.items():
        grouped[subtopic_id] = {
            prop_index: sorted(audios, key=lambda asset: asset.audio_index or 0)
            for prop_index, audios in by_prop.items()
        }
    return grouped


def _inline_audios(raw_prop: Dict[str, Any]) -> List[AudioAsset]:
    audios = []
    for raw_audio in raw_prop.get("audios") or []:
        if isinstance(raw_audio, dict) and ("base64" in raw_audio or "blobBase64" in raw_audio):
            audios.append(AudioAsset.from_dict(raw_audio))
    return audios


def _migrate_proposition(raw: Any, subtopic_id: str, index: int, audio_groups: AudioGroups) -> Proposition:
    if isinstance(raw, str):
        raw = {"text": raw}
    if not isinstance(raw, dict):
        raise LegacyDataError(f"Legacy proposition {index} of {subtopic_id} is not an object.")

    prop_type = PropositionType.parse(raw.get("type")) or PropositionType.for_index(index)
    label = raw.get("label")
    text = raw.get("text", raw.get("texto", ""))

    audios = _inline_audios(raw) or audio_groups.get(subtopic_id, {}).get(index, [])
    audios = [
        replace(asset, subtopic_id=subtopic_id, proposition_index=index, audio_index=position)
        for position, asset in enumerate(audios)
    ]

    return Proposition(
        id=ensure_id(raw.get("id"), fallback_id(subtopic_id, "prop", index)),
        type=prop_type,
        label=label if isinstance(label, str) and label else DEFAULT_LABELS[prop_type],
        text=text if isinstance(text, str) else str(text),
        audios=audios,
    )


def _migrate_subtopic(raw: Any, fallback: str, audio_groups: AudioGroups) -> Subtopic:
    if not isinstance(raw, dict):
        raise LegacyDataError(f"Legacy subtopic {fallback} is not an object.")

    subtopic_id = ensure_id(raw.get("id"), fallback)
    raw_props = raw.get("propositions")
    propositions = None
    if isinstance(raw_props, list):
        propositions = [
            _migrate_proposition(prop, subtopic_id, index, audio_groups)
            for index, prop in enumerate(raw_props)
        ]

    text = raw.get("text", raw.get("texto", ""))
    return Subtopic(
        id=subtopic_id,
        text=text if isinstance(text, str) else str(text),
        propositions=propositions,
        title=raw.get("title") if isinstance(raw.get("title"), str) else None,
    )


def _migrate_theme(raw: Any, index: int, audio_groups: AudioGroups) -> Theme:
    if not isinstance(raw, dict):
        raise LegacyDataError(f"Legacy theme {index} is not an object.")

    theme_id = ensure_id(raw.get("id"), fallback_id("legacy", "theme", index))
    raw_subtopics = raw.get("subtopics") or []
    if not isinstance(raw_subtopics, list):
        raise LegacyDataError(f"Legacy theme {theme_id} has a non-list subtopics field.")

    name = raw.get("name")
    return Theme(
        id=theme_id,
        name=name if isinstance(name, str) else str(name or ""),
        subtopics=[
            _migrate_subtopic(subtopic, fallback_id(theme_id, "subtopic", position), audio_groups)
            for position, subtopic in enumerate(raw_subtopics)
        ],
    )


def _migrated_state(themes: List[Theme], now: int) -> AppState:
    era = Era(
        id=f"era-migrated-{now}",
        name=MIGRATED_ERA_NAME,
        created_at=now,
        updated_at=now,
        closed_at=None,
        themes=themes,
    )
    return AppState(current_era=era, era_history=[])


def migrate_snapshot(snapshot: Snapshot, audio_rows: Iterable[AudioAsset] = (), now: Optional[int] = None) -> AppState:
    """Strict variant of ``migrate_legacy``: raises ``LegacyDataError`` on malformed records."""
    timestamp = now if now is not None else now_ms()

    if isinstance(snapshot, CurrentSnapshot):
        return snapshot.state

    if isinstance(snapshot, EmptySnapshot):
        raise LegacyDataError("No legacy data to migrate.")

    audio_groups = group_legacy_audio(audio_rows)

    if isinstance(snapshot, LegacySubtopics):
        legacy_theme = Theme(
            id=LEGACY_THEME_ID,
            name=LEGACY_THEME_NAME,
            subtopics=[
                _migrate_subtopic(raw, fallback_id(LEGACY_THEME_ID, "subtopic", index), audio_groups)
                for index, raw in enumerate(snapshot.subtopics)
            ],
        )
        logger.info("[MIGRATION] Migrated %s flat legacy subtopics", len(legacy_theme.subtopics))
        return _migrated_state([legacy_theme], timestamp)

    themes = [_migrate_theme(raw, index, audio_groups) for index, raw in enumerate(snapshot.themes)]
    logger.info("[MIGRATION] Migrated %s legacy themes", len(themes))
    return _migrated_state(themes, timestamp)


def migrate_legacy(raw: Any, audio_rows: Iterable[AudioAsset] = (), now: Optional[int] = None) -> AppState:
    """Upgrade ``raw`` to an ``AppState``. Never raises; falls back to the sample state."""
    timestamp = now if now is not None else now_ms()
    try:
        snapshot = classify_snapshot(raw, timestamp)
        return migrate_snapshot(snapshot, audio_rows, timestamp)
    except (LegacyDataError, TypeError, ValueError, AttributeError) as exc:
        logger.exception("[MIGRATION] Legacy migration failed; using sample state: %s", exc)
        return create_sample_state(timestamp)

