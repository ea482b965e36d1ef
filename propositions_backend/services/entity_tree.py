"""
Era / Theme / Subtopic / Proposition / Audio tree.

The tree is plain dataclasses. Every mutation helper in this module is
path-copying: it returns a new ``AppState`` that shares untouched branches
with the input and never modifies a node in place. Archived eras are
therefore never reachable from a mutation, and ``clone()`` is only needed
where a snapshot must become fully independent (closing/reopening eras,
handing state to a backend).

Wire format (``to_dict``/``from_dict``) is the camelCase JSON document that
every backend persists.
"""

import base64
import binascii
import enum
import logging
import math
import time
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from propositions_backend.services.errors import ArchivedEraError, EraNotFoundError, LegacyDataError
from propositions_backend.services.identity import ensure_id, fallback_id

logger = logging.getLogger("propositions_backend")

DEFAULT_AUDIO_MIME_TYPE = "audio/webm"

EXTERNAL_THEME_ID = "external-subtopics"
EXTERNAL_THEME_NAME = "Subtemas compartidos"
REMOTE_THEME_ID = "remote-subtopics"
REMOTE_THEME_NAME = "Subtemas remotos"
RESERVED_THEME_IDS = (EXTERNAL_THEME_ID, REMOTE_THEME_ID)

SAMPLE_THEME_ID = "theme-1"
SAMPLE_THEME_NAME = "Tema de ejemplo"
SAMPLE_SUBTOPIC_ID = "subtopic-1"
SAMPLE_SUBTOPIC_TEXT = "Si es Derivable entonces es Continuo"

_MIME_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower().replace("-", "").replace("_", "").replace(" ", "")


class PropositionType(str, enum.Enum):
    CONDITION = "condicion"
    RECIPROCAL = "reciproco"
    INVERSE = "inverso"
    CONTRAPOSITIVE = "contrareciproco"
    CUSTOM = "custom"

    @classmethod
    def for_index(cls, index: int) -> "PropositionType":
        """Positional type used when legacy data carries none."""
        if 0 <= index < len(_STANDARD_ORDER):
            return _STANDARD_ORDER[index]
        return cls.CUSTOM

    @classmethod
    def parse(cls, value: Any) -> Optional["PropositionType"]:
        """Accept wire values, English names and accented/hyphenated spellings."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        return _TYPE_ALIASES.get(_fold(value))


_STANDARD_ORDER = (
    PropositionType.CONDITION,
    PropositionType.RECIPROCAL,
    PropositionType.INVERSE,
    PropositionType.CONTRAPOSITIVE,
)

_TYPE_ALIASES: Dict[str, PropositionType] = {}
for _member in PropositionType:
    _TYPE_ALIASES[_fold(_member.value)] = _member
    _TYPE_ALIASES[_fold(_member.name)] = _member
_TYPE_ALIASES.update({
    "condicion": PropositionType.CONDITION,
    "reciprocal": PropositionType.RECIPROCAL,
    "converse": PropositionType.RECIPROCAL,
    "inverse": PropositionType.INVERSE,
    "contrapositive": PropositionType.CONTRAPOSITIVE,
    "contrarreciproco": PropositionType.CONTRAPOSITIVE,
})

DEFAULT_LABELS: Dict[PropositionType, str] = {
    PropositionType.CONDITION: "Condición",
    PropositionType.RECIPROCAL: "Recíproco",
    PropositionType.INVERSE: "Inverso",
    PropositionType.CONTRAPOSITIVE: "Contra-Recíproco",
    PropositionType.CUSTOM: "Proposición",
}


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _as_list(value: Any, where: str) -> List[Any]:
    """Missing collections read as empty; anything other than a list is corrupt."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise LegacyDataError(f"{where} must be a list, got {type(value).__name__}.")
    return value


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class AudioAsset:
    data: bytes
    mime_type: str = DEFAULT_AUDIO_MIME_TYPE
    timestamp: Optional[int] = None
    subtopic_id: Optional[str] = None
    proposition_index: Optional[int] = None
    audio_index: Optional[int] = None

    @property
    def extension(self) -> str:
        base = (self.mime_type or "").split(";", 1)[0].strip().lower()
        return _MIME_EXTENSIONS.get(base, "webm")

    def clone(self) -> "AudioAsset":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mimeType": self.mime_type or DEFAULT_AUDIO_MIME_TYPE,
            "base64": base64.b64encode(self.data).decode("ascii"),
        }
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AudioAsset":
        encoded = raw.get("base64", raw.get("blobBase64"))
        if not isinstance(encoded, str):
            raise LegacyDataError("Audio entry has no base64 payload.")
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise LegacyDataError(f"Audio entry is not valid base64: {exc}") from exc
        return cls(
            data=data,
            mime_type=raw.get("mimeType") or DEFAULT_AUDIO_MIME_TYPE,
            timestamp=_as_int(raw.get("timestamp"), None),
        )


@dataclass
class Proposition:
    id: str
    type: PropositionType
    label: str
    text: str
    audios: List[AudioAsset] = field(default_factory=list)

    def clone(self) -> "Proposition":
        return replace(self, audios=[audio.clone() for audio in self.audios])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "label": self.label,
            "text": self.text,
            "audios": [audio.to_dict() for audio in self.audios],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], subtopic_id: str, index: int) -> "Proposition":
        if not isinstance(raw, dict):
            raise LegacyDataError(f"Proposition {index} of {subtopic_id} is not an object.")
        prop_type = PropositionType.parse(raw.get("type")) or PropositionType.for_index(index)
        audios = []
        for audio in _as_list(raw.get("audios"), f"Audios of proposition {index} in {subtopic_id}"):
            if isinstance(audio, dict):
                audios.append(AudioAsset.from_dict(audio))
        label = raw.get("label") if isinstance(raw.get("label"), str) and raw.get("label") else DEFAULT_LABELS[prop_type]
        return cls(
            id=ensure_id(raw.get("id"), fallback_id(subtopic_id, "prop", index)),
            type=prop_type,
            label=label,
            text=_as_text(raw.get("text")),
            audios=audios,
        )


@dataclass
class Subtopic:
    id: str
    text: str
    propositions: Optional[List[Proposition]] = None
    title: Optional[str] = None
    tags: Optional[List[str]] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_expanded(self) -> bool:
        return self.propositions is not None

    def clone(self) -> "Subtopic":
        return replace(
            self,
            propositions=[prop.clone() for prop in self.propositions] if self.propositions is not None else None,
            tags=list(self.tags) if self.tags is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "propositions": [prop.to_dict() for prop in self.propositions] if self.propositions is not None else None,
        }
        if self.title is not None:
            payload["title"] = self.title
        if self.tags is not None:
            payload["tags"] = list(self.tags)
        if self.created_at is not None:
            payload["createdAt"] = self.created_at
        if self.updated_at is not None:
            payload["updatedAt"] = self.updated_at
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], theme_id: str, index: int) -> "Subtopic":
        if not isinstance(raw, dict):
            raise LegacyDataError(f"Subtopic {index} of {theme_id} is not an object.")
        subtopic_id = ensure_id(raw.get("id"), fallback_id(theme_id, "subtopic", index))
        raw_props = raw.get("propositions")
        propositions = None
        if isinstance(raw_props, list):
            propositions = [
                Proposition.from_dict(prop, subtopic_id, prop_index)
                for prop_index, prop in enumerate(raw_props)
            ]
        tags = raw.get("tags")
        return cls(
            id=subtopic_id,
            text=_as_text(raw.get("text")),
            propositions=propositions,
            title=raw.get("title") if isinstance(raw.get("title"), str) else None,
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else None,
            created_at=_as_int(raw.get("createdAt"), None),
            updated_at=_as_int(raw.get("updatedAt"), None),
        )


@dataclass
class Theme:
    id: str
    name: str
    subtopics: List[Subtopic] = field(default_factory=list)

    def clone(self) -> "Theme":
        return replace(self, subtopics=[subtopic.clone() for subtopic in self.subtopics])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subtopics": [subtopic.to_dict() for subtopic in self.subtopics],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], era_id: str, index: int) -> "Theme":
        if not isinstance(raw, dict):
            raise LegacyDataError(f"Theme {index} of {era_id} is not an object.")
        theme_id = ensure_id(raw.get("id"), fallback_id(era_id, "theme", index))
        return cls(
            id=theme_id,
            name=_as_text(raw.get("name")),
            subtopics=[
                Subtopic.from_dict(subtopic, theme_id, subtopic_index)
                for subtopic_index, subtopic in enumerate(_as_list(raw.get("subtopics"), f"Subtopics of {theme_id}"))
            ],
        )


@dataclass
class Era:
    id: str
    name: str
    created_at: int
    updated_at: int
    closed_at: Optional[int] = None
    themes: List[Theme] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def clone(self) -> "Era":
        return replace(self, themes=[theme.clone() for theme in self.themes])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "closedAt": self.closed_at,
            "themes": [theme.to_dict() for theme in self.themes],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], fallback: str, now: int) -> "Era":
        if not isinstance(raw, dict):
            raise LegacyDataError(f"Era {fallback} is not an object.")
        era_id = ensure_id(raw.get("id"), fallback)
        created_at = _as_int(raw.get("createdAt"), now)
        return cls(
            id=era_id,
            name=_as_text(raw.get("name")),
            created_at=created_at,
            updated_at=_as_int(raw.get("updatedAt"), created_at),
            closed_at=_as_int(raw.get("closedAt"), None),
            themes=[
                Theme.from_dict(theme, era_id, theme_index)
                for theme_index, theme in enumerate(_as_list(raw.get("themes"), f"Themes of {era_id}"))
            ],
        )


@dataclass
class AppState:
    current_era: Era
    era_history: List[Era] = field(default_factory=list)

    def clone(self) -> "AppState":
        return AppState(
            current_era=self.current_era.clone(),
            era_history=[era.clone() for era in self.era_history],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentEra": self.current_era.to_dict(),
            "eraHistory": [era.to_dict() for era in self.era_history],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], now: Optional[int] = None) -> "AppState":
        if not is_current_schema(raw):
            raise LegacyDataError("Document is not a current-schema app state.")
        timestamp = now if now is not None else now_ms()

        current = Era.from_dict(raw["currentEra"], "era-current", timestamp)
        if current.closed_at is not None:
            logger.warning("[TREE] Current era %s was stored as closed; reopening it", current.id)
            current = replace(current, closed_at=None)

        history = []
        for index, raw_era in enumerate(_as_list(raw.get("eraHistory"), "eraHistory")):
            era = Era.from_dict(raw_era, fallback_id("era", "history", index), timestamp)
            if era.closed_at is None:
                logger.warning("[TREE] Archived era %s had no closedAt; stamping updatedAt", era.id)
                era = replace(era, closed_at=era.updated_at)
            history.append(era)
        return cls(current_era=current, era_history=history)


def is_current_schema(raw: Any) -> bool:
    return isinstance(raw, dict) and isinstance(raw.get("currentEra"), dict)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def create_blank_era(now: Optional[int] = None, name: Optional[str] = None, era_id: Optional[str] = None) -> Era:
    timestamp = now if now is not None else now_ms()
    return Era(
        id=era_id or f"era-{timestamp}",
        name=name or "Nuevo ciclo",
        created_at=timestamp,
        updated_at=timestamp,
        closed_at=None,
        themes=[],
    )


def create_default_state(now: Optional[int] = None) -> AppState:
    timestamp = now if now is not None else now_ms()
    era = create_blank_era(timestamp, name="Ciclo automático", era_id=f"era-auto-{timestamp}")
    return AppState(current_era=era, era_history=[])


def create_sample_state(now: Optional[int] = None) -> AppState:
    """Default state seeded with the built-in sample theme."""
    state = create_default_state(now)
    sample = Theme(
        id=SAMPLE_THEME_ID,
        name=SAMPLE_THEME_NAME,
        subtopics=[Subtopic(id=SAMPLE_SUBTOPIC_ID, text=SAMPLE_SUBTOPIC_TEXT, propositions=None)],
    )
    state.current_era.themes.append(sample)
    return state


def build_standard_propositions(subtopic: Subtopic, variants: Dict[PropositionType, str]) -> List[Proposition]:
    """Condition plus the three generated variants, ids derived from the subtopic id."""
    propositions = [
        Proposition(
            id=f"{subtopic.id}-{PropositionType.CONDITION.value}",
            type=PropositionType.CONDITION,
            label=DEFAULT_LABELS[PropositionType.CONDITION],
            text=subtopic.text,
        )
    ]
    for prop_type in _STANDARD_ORDER[1:]:
        propositions.append(
            Proposition(
                id=f"{subtopic.id}-{prop_type.value}",
                type=prop_type,
                label=DEFAULT_LABELS[prop_type],
                text=variants.get(prop_type, ""),
            )
        )
    return propositions


# ---------------------------------------------------------------------------
# Path-copying mutation helpers
# ---------------------------------------------------------------------------

def _guard_current(state: AppState, era_id: Optional[str]) -> None:
    if era_id is None or era_id == state.current_era.id:
        return
    if any(era.id == era_id for era in state.era_history):
        raise ArchivedEraError(era_id)
    raise EraNotFoundError(era_id)


def update_current_era(
    state: AppState,
    updater: Callable[[Era], Era],
    now: Optional[int] = None,
) -> AppState:
    updated = updater(state.current_era)
    updated = replace(updated, updated_at=now if now is not None else now_ms())
    return AppState(current_era=updated, era_history=list(state.era_history))


def update_era_path(
    state: AppState,
    era_id: str,
    updater: Callable[[Era], Era],
    now: Optional[int] = None,
) -> AppState:
    """Apply ``updater`` to the era ``era_id``; only the open era accepts content changes."""
    _guard_current(state, era_id)
    return update_current_era(state, updater, now)


def update_theme(
    state: AppState,
    theme_id: str,
    updater: Callable[[Theme], Theme],
    now: Optional[int] = None,
    era_id: Optional[str] = None,
) -> AppState:
    _guard_current(state, era_id)
    if not any(theme.id == theme_id for theme in state.current_era.themes):
        raise KeyError(f"Theme {theme_id} not found in current era")

    def _apply(era: Era) -> Era:
        return replace(
            era,
            themes=[updater(theme) if theme.id == theme_id else theme for theme in era.themes],
        )

    return update_current_era(state, _apply, now)


def update_subtopic(
    state: AppState,
    theme_id: str,
    subtopic_id: str,
    updater: Callable[[Subtopic], Subtopic],
    now: Optional[int] = None,
    era_id: Optional[str] = None,
) -> AppState:
    def _apply(theme: Theme) -> Theme:
        if not any(subtopic.id == subtopic_id for subtopic in theme.subtopics):
            raise KeyError(f"Subtopic {subtopic_id} not found in theme {theme_id}")
        return replace(
            theme,
            subtopics=[updater(s) if s.id == subtopic_id else s for s in theme.subtopics],
        )

    return update_theme(state, theme_id, _apply, now, era_id)


def set_subtopic_text(subtopic: Subtopic, text: str) -> Subtopic:
    """Return ``subtopic`` with new text; the condition proposition mirrors it."""
    propositions = subtopic.propositions
    if propositions is not None:
        propositions = [
            replace(prop, text=text) if prop.type == PropositionType.CONDITION else prop
            for prop in propositions
        ]
    return replace(subtopic, text=text, propositions=propositions)


def add_theme(
    state: AppState,
    name: str = "Nuevo tema",
    now: Optional[int] = None,
    theme_id: Optional[str] = None,
) -> AppState:
    timestamp = now if now is not None else now_ms()
    theme = Theme(id=theme_id or f"theme-{timestamp}", name=name, subtopics=[])
    return update_current_era(state, lambda era: replace(era, themes=[*era.themes, theme]), timestamp)


def rename_theme(state: AppState, theme_id: str, name: str, now: Optional[int] = None) -> AppState:
    return update_theme(state, theme_id, lambda theme: replace(theme, name=name), now)


def add_subtopic(state: AppState, theme_id: str, subtopic: Subtopic, now: Optional[int] = None) -> AppState:
    return update_theme(
        state,
        theme_id,
        lambda theme: replace(theme, subtopics=[*theme.subtopics, subtopic]),
        now,
    )


def edit_subtopic_text(
    state: AppState,
    theme_id: str,
    subtopic_id: str,
    text: str,
    now: Optional[int] = None,
) -> AppState:
    return update_subtopic(state, theme_id, subtopic_id, lambda s: set_subtopic_text(s, text), now)


def set_propositions(
    state: AppState,
    theme_id: str,
    subtopic_id: str,
    propositions: Optional[List[Proposition]],
    now: Optional[int] = None,
) -> AppState:
    return update_subtopic(
        state,
        theme_id,
        subtopic_id,
        lambda s: replace(s, propositions=list(propositions) if propositions is not None else None),
        now,
    )


def append_audio(
    state: AppState,
    theme_id: str,
    subtopic_id: str,
    proposition_index: int,
    asset: AudioAsset,
    now: Optional[int] = None,
) -> AppState:
    timestamp = now if now is not None else now_ms()

    def _apply(subtopic: Subtopic) -> Subtopic:
        if subtopic.propositions is None or not 0 <= proposition_index < len(subtopic.propositions):
            raise IndexError(f"Subtopic {subtopic_id} has no proposition {proposition_index}")
        propositions = list(subtopic.propositions)
        target = propositions[proposition_index]
        stamped = replace(
            asset,
            subtopic_id=subtopic_id,
            proposition_index=proposition_index,
            audio_index=len(target.audios),
            timestamp=asset.timestamp if asset.timestamp is not None else timestamp,
        )
        propositions[proposition_index] = replace(target, audios=[*target.audios, stamped])
        return replace(subtopic, propositions=propositions)

    return update_subtopic(state, theme_id, subtopic_id, _apply, timestamp)


def latest_audio(proposition: Proposition) -> Optional[AudioAsset]:
    return proposition.audios[-1] if proposition.audios else None


# ---------------------------------------------------------------------------
# Queries and summaries
# ---------------------------------------------------------------------------

@dataclass
class EraSummary:
    id: str
    name: str
    created_at: int
    updated_at: int
    closed_at: Optional[int]
    theme_count: int
    subtopic_count: int
    proposition_count: int
    audio_count: int


def summarize_era(era: Era) -> EraSummary:
    subtopics = [subtopic for theme in era.themes for subtopic in theme.subtopics]
    propositions = [prop for subtopic in subtopics for prop in (subtopic.propositions or [])]
    return EraSummary(
        id=era.id,
        name=era.name,
        created_at=era.created_at,
        updated_at=era.updated_at,
        closed_at=era.closed_at,
        theme_count=len(era.themes),
        subtopic_count=len(subtopics),
        proposition_count=len(propositions),
        audio_count=sum(len(prop.audios) for prop in propositions),
    )


def history_summaries(state: AppState) -> List[EraSummary]:
    summaries = [summarize_era(era) for era in state.era_history]
    return sorted(summaries, key=lambda summary: summary.updated_at, reverse=True)


@dataclass
class SubtopicLocation:
    subtopic: Subtopic
    theme: Theme
    era: Era


def find_subtopic(state: Optional[AppState], subtopic_id: str) -> Optional[SubtopicLocation]:
    """Search the current era first, then history newest-first."""
    if state is None:
        return None
    for era in [state.current_era, *state.era_history]:
        for theme in era.themes:
            for subtopic in theme.subtopics:
                if subtopic.id == subtopic_id:
                    return SubtopicLocation(subtopic=subtopic, theme=theme, era=era)
    return None


def iter_audio_assets(era: Era):
    """Yield ``(subtopic_id, prop_index, audio_index, asset)`` for every audio in ``era``."""
    for theme in era.themes:
        for subtopic in theme.subtopics:
            for prop_index, prop in enumerate(subtopic.propositions or []):
                for audio_index, asset in enumerate(prop.audios):
                    yield subtopic.id, prop_index, audio_index, asset
