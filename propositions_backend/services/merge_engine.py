"""
Merges of externally supplied content and era lifecycle swaps.

Every operation takes an ``AppState`` and returns a new one; the input is
never modified. Upserts are idempotent: applying the same payload twice
yields the same content as applying it once.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import unquote

from propositions_backend.services.entity_tree import (
    EXTERNAL_THEME_ID,
    EXTERNAL_THEME_NAME,
    REMOTE_THEME_ID,
    REMOTE_THEME_NAME,
    AppState,
    Era,
    Subtopic,
    Theme,
    create_blank_era,
    create_default_state,
    now_ms,
    set_subtopic_text,
)
from propositions_backend.services.errors import EraNotFoundError
from propositions_backend.services.identity import normalize_id

logger = logging.getLogger("propositions_backend")

_RESERVED_THEME_NAMES = {
    EXTERNAL_THEME_ID: EXTERNAL_THEME_NAME,
    REMOTE_THEME_ID: REMOTE_THEME_NAME,
}


@dataclass
class ExternalSubtopicPayload:
    id: str
    name: str


@dataclass
class MergeOutcome:
    state: AppState
    created: bool
    updated: bool


def _strip_quotes(value: str) -> str:
    for quote in ('"', "'"):
        if value.startswith(quote):
            value = value[1:]
        if value.endswith(quote):
            value = value[:-1]
    return value.strip()


def parse_external_payload(raw: Optional[str]) -> Optional[ExternalSubtopicPayload]:
    """Parse a URL-encoded ``id=name`` pair. Returns None when either part is empty."""
    if not raw:
        return None

    decoded = unquote(raw)
    if "=" not in decoded:
        return None

    id_part, name_part = decoded.split("=", 1)
    subtopic_id = id_part.strip()
    name = _strip_quotes(name_part.strip())
    if not subtopic_id or not name:
        return None
    return ExternalSubtopicPayload(id=subtopic_id, name=name)


def prepare_state_for_external(state: Optional[AppState], now: Optional[int] = None) -> AppState:
    """Independent copy of ``state``, or a freshly bootstrapped state when there is none."""
    if state is None:
        logger.info("[MERGE] No stored state; bootstrapping a default state for external subtopic")
        return create_default_state(now)
    return state.clone()


def upsert_external_subtopic(
    state: AppState,
    payload: ExternalSubtopicPayload,
    theme_id: str = EXTERNAL_THEME_ID,
    now: Optional[int] = None,
) -> MergeOutcome:
    """Insert or rename the subtopic ``payload.id`` inside the reserved theme ``theme_id``.

    The reserved theme is created on first use. Renaming keeps an existing
    condition proposition in sync with the new text. When nothing changes, or
    the payload id is blank, the returned state carries the input's content
    and timestamps unchanged.
    """
    subtopic_id = normalize_id(payload.id)
    if subtopic_id is None:
        logger.warning("[MERGE] Ignoring external subtopic without a usable id: %r", payload.id)
        return MergeOutcome(state=state, created=False, updated=False)

    timestamp = now if now is not None else now_ms()
    era = state.current_era
    themes = list(era.themes)
    created = updated = False

    theme_index = next((i for i, theme in enumerate(themes) if theme.id == theme_id), None)
    new_subtopic = Subtopic(id=subtopic_id, text=payload.name, propositions=None)

    if theme_index is None:
        themes.append(
            Theme(id=theme_id, name=_RESERVED_THEME_NAMES.get(theme_id, theme_id), subtopics=[new_subtopic])
        )
        created = True
    else:
        theme = themes[theme_index]
        subtopics = list(theme.subtopics)
        subtopic_index = next((i for i, s in enumerate(subtopics) if normalize_id(s.id) == subtopic_id), None)
        if subtopic_index is None:
            subtopics.append(new_subtopic)
            created = True
        elif subtopics[subtopic_index].text != payload.name:
            subtopics[subtopic_index] = set_subtopic_text(subtopics[subtopic_index], payload.name)
            updated = True
        themes[theme_index] = replace(theme, subtopics=subtopics)

    if not (created or updated):
        return MergeOutcome(state=state, created=False, updated=False)

    next_state = AppState(
        current_era=replace(era, themes=themes, updated_at=timestamp),
        era_history=list(state.era_history),
    )
    logger.info(
        "[MERGE] Upserted subtopic %s into %s (created=%s, updated=%s)", subtopic_id, theme_id, created, updated
    )
    return MergeOutcome(state=next_state, created=created, updated=updated)


def _unique_era_id(state: AppState, base: str) -> str:
    taken = {state.current_era.id, *(era.id for era in state.era_history)}
    candidate = base
    suffix = 1
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def close_cycle(state: AppState, now: Optional[int] = None, name: Optional[str] = None) -> AppState:
    """Archive the current era and open a blank one."""
    timestamp = now if now is not None else now_ms()
    archived = state.current_era.clone()
    archived.closed_at = timestamp
    archived.updated_at = timestamp

    fresh = create_blank_era(timestamp, name=name, era_id=_unique_era_id(state, f"era-{timestamp}"))
    logger.info("[MERGE] Closed era %s; opened %s", archived.id, fresh.id)
    return AppState(current_era=fresh, era_history=[archived, *state.era_history])


def reopen_era(state: AppState, era_id: str, now: Optional[int] = None) -> AppState:
    """Swap the archived era ``era_id`` with the current one."""
    if era_id == state.current_era.id:
        return state

    index = next((i for i, era in enumerate(state.era_history) if era.id == era_id), None)
    if index is None:
        raise EraNotFoundError(era_id)

    timestamp = now if now is not None else now_ms()
    reopened = state.era_history[index].clone()
    reopened.closed_at = None
    reopened.updated_at = timestamp

    previous = state.current_era.clone()
    previous.closed_at = timestamp
    previous.updated_at = timestamp

    history = list(state.era_history)
    history[index] = previous
    logger.info("[MERGE] Reopened era %s; archived %s", reopened.id, previous.id)
    return AppState(current_era=reopened, era_history=history)


def rename_era(state: AppState, era_id: str, name: str, now: Optional[int] = None) -> AppState:
    """Rename any era, archived ones included."""
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Era name must not be blank")

    timestamp = now if now is not None else now_ms()

    def _renamed(era: Era) -> Era:
        return replace(era, name=name.strip(), updated_at=timestamp)

    if era_id == state.current_era.id:
        return AppState(current_era=_renamed(state.current_era), era_history=list(state.era_history))

    history = list(state.era_history)
    for index, era in enumerate(history):
        if era.id == era_id:
            history[index] = _renamed(era)
            return AppState(current_era=state.current_era, era_history=history)
    raise EraNotFoundError(era_id)
