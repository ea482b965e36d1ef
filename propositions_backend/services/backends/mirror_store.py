"""
Best-effort mirror of the state into a plain directory tree.

Layout::

    app-state.json                       whole state, audio replaced by ``audioCount``
    themes.json                          flattened current-era projection (legacy readers)
    audio-{eraId}-{subtopicId}-{p}-{a}.{ext}

Readers fall back to ``audio-{subtopicId}-{p}-{a}.{ext}`` for clips written
before eras existed, and to ``themes.json``/``subtopics.json`` when there is
no ``app-state.json``. Each file is written independently; a failed write is
recorded in the ``MirrorWriteReport`` and never stops the remaining writes.
"""

import asyncio
import base64
import glob
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from propositions_backend.services.backends.base import LegacyBundle, StorageBackend
from propositions_backend.services.entity_tree import DEFAULT_AUDIO_MIME_TYPE, AppState, AudioAsset, Era
from propositions_backend.services.errors import BackendUnavailableError

logger = logging.getLogger("propositions_backend")

APP_STATE_FILE = "app-state.json"
THEMES_FILE = "themes.json"
SUBTOPICS_FILE = "subtopics.json"

_EXTENSION_MIME_TYPES = {
    "webm": "audio/webm",
    "ogg": "audio/ogg",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
}
_INDEX_SUFFIX = re.compile(r"^(\d+)-(\d+)\.([A-Za-z0-9]+)$")


@dataclass
class MirrorWriteReport:
    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def audio_filename(subtopic_id: str, prop_index: int, audio_index: int, extension: str = "webm",
                   era_id: Optional[str] = None) -> str:
    if era_id:
        return f"audio-{era_id}-{subtopic_id}-{prop_index}-{audio_index}.{extension}"
    return f"audio-{subtopic_id}-{prop_index}-{audio_index}.{extension}"


def _strip_audio(era_doc: Dict[str, Any]) -> Dict[str, Any]:
    for theme in era_doc.get("themes", []):
        for subtopic in theme.get("subtopics", []):
            for prop in subtopic.get("propositions") or []:
                prop["audioCount"] = len(prop.get("audios") or [])
                prop["audios"] = []
    return era_doc


def themes_projection(era: Era) -> List[Dict[str, Any]]:
    """Current-era themes in the flattened pre-era ``themes.json`` shape."""
    return [
        {
            "id": theme.id,
            "name": theme.name,
            "subtopics": [
                {
                    "id": subtopic.id,
                    "text": subtopic.text,
                    "propositions": [
                        {
                            "id": prop.id,
                            "type": prop.type.value,
                            "label": prop.label,
                            "text": prop.text,
                            "audioCount": len(prop.audios),
                        }
                        for prop in subtopic.propositions
                    ] if subtopic.propositions is not None else None,
                }
                for subtopic in theme.subtopics
            ],
        }
        for theme in era.themes
    ]


class MirrorStore(StorageBackend):
    name = "mirror"

    def __init__(self, root_dir: str):
        self.root = Path(root_dir).expanduser()
        self._lock = asyncio.Lock()

    # -- file helpers -----------------------------------------------------

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailableError(self.name, f"Cannot create mirror directory {self.root}: {exc}") from exc

    def _read_json(self, filename: str) -> Optional[Any]:
        path = self.root / filename
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("[MIRROR] %s is not valid JSON; ignoring it: %s", filename, exc)
            return None
        except OSError as exc:
            raise BackendUnavailableError(self.name, f"Cannot read {filename}: {exc}") from exc

    def _write(self, report: MirrorWriteReport, filename: str, content) -> None:
        path = self.root / filename
        try:
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
            report.written.append(filename)
        except OSError as exc:
            logger.warning("[MIRROR] Failed to write %s: %s", filename, exc)
            report.failed[filename] = str(exc)

    def _find_audio_file(self, subtopic_id: str, prop_index: int, audio_index: int,
                         era_id: Optional[str]) -> Optional[Path]:
        stems = []
        if era_id:
            stems.append(f"audio-{era_id}-{subtopic_id}-{prop_index}-{audio_index}")
        stems.append(f"audio-{subtopic_id}-{prop_index}-{audio_index}")
        for stem in stems:
            matches = sorted(self.root.glob(glob.escape(stem) + ".*"))
            if matches:
                return matches[0]
        return None

    def _read_audio(self, subtopic_id: str, prop_index: int, audio_index: int,
                    era_id: Optional[str]) -> Optional[AudioAsset]:
        path = self._find_audio_file(subtopic_id, prop_index, audio_index, era_id)
        if path is None:
            logger.warning(
                "[MIRROR] Missing audio file for %s prop %s audio %s", subtopic_id, prop_index, audio_index
            )
            return None
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise BackendUnavailableError(self.name, f"Cannot read {path.name}: {exc}") from exc
        extension = path.suffix.lstrip(".").lower()
        return AudioAsset(
            data=data,
            mime_type=_EXTENSION_MIME_TYPES.get(extension, DEFAULT_AUDIO_MIME_TYPE),
            subtopic_id=subtopic_id,
            proposition_index=prop_index,
            audio_index=audio_index,
        )

    def _hydrate_era(self, era_doc: Dict[str, Any]) -> None:
        era_id = era_doc.get("id")
        for theme in era_doc.get("themes") or []:
            for subtopic in theme.get("subtopics") or []:
                for prop_index, prop in enumerate(subtopic.get("propositions") or []):
                    count = prop.pop("audioCount", 0) or 0
                    if prop.get("audios"):
                        continue
                    audios = []
                    for audio_index in range(int(count)):
                        asset = self._read_audio(subtopic.get("id"), prop_index, audio_index, era_id)
                        if asset is not None:
                            audios.append(asset.to_dict())
                    prop["audios"] = audios

    # -- StorageBackend ---------------------------------------------------

    async def load_state(self) -> Optional[Any]:
        async with self._lock:
            document = self._read_json(APP_STATE_FILE)
            if not isinstance(document, dict) or not isinstance(document.get("currentEra"), dict):
                return None
            self._hydrate_era(document["currentEra"])
            for era_doc in document.get("eraHistory") or []:
                if isinstance(era_doc, dict):
                    self._hydrate_era(era_doc)
            logger.info("[MIRROR] Loaded %s from %s", APP_STATE_FILE, self.root)
            return document

    async def save_state(self, state: AppState) -> MirrorWriteReport:
        document = state.to_dict()
        report = MirrorWriteReport()
        async with self._lock:
            self._ensure_root()

            for era in [state.current_era, *state.era_history]:
                for theme in era.themes:
                    for subtopic in theme.subtopics:
                        for prop_index, prop in enumerate(subtopic.propositions or []):
                            for audio_index, asset in enumerate(prop.audios):
                                filename = audio_filename(
                                    subtopic.id, prop_index, audio_index, asset.extension, era_id=era.id
                                )
                                self._write(report, filename, asset.data)

            _strip_audio(document["currentEra"])
            for era_doc in document["eraHistory"]:
                _strip_audio(era_doc)
            self._write(report, APP_STATE_FILE, json.dumps(document, indent=2, ensure_ascii=False))
            self._write(
                report,
                THEMES_FILE,
                json.dumps(themes_projection(state.current_era), indent=2, ensure_ascii=False),
            )

        if report.failed:
            logger.warning("[MIRROR] %s of %s writes failed", len(report.failed), len(report.failed) + len(report.written))
        else:
            logger.debug("[MIRROR] Wrote %s files to %s", len(report.written), self.root)
        return report

    async def load_audio(self, subtopic_id: str) -> List[AudioAsset]:
        """Legacy-named clips for ``subtopic_id``, ordered by proposition then audio index."""
        async with self._lock:
            if not self.root.exists():
                return []
            prefix = f"audio-{subtopic_id}-"
            found = []
            for path in self.root.glob(glob.escape(prefix) + "*"):
                match = _INDEX_SUFFIX.match(path.name[len(prefix):])
                if match:
                    found.append((int(match.group(1)), int(match.group(2)), path))
            found.sort(key=lambda entry: (entry[0], entry[1]))

            assets = []
            for prop_index, audio_index, path in found:
                try:
                    data = path.read_bytes()
                except OSError as exc:
                    raise BackendUnavailableError(self.name, f"Cannot read {path.name}: {exc}") from exc
                assets.append(
                    AudioAsset(
                        data=data,
                        mime_type=_EXTENSION_MIME_TYPES.get(path.suffix.lstrip(".").lower(), DEFAULT_AUDIO_MIME_TYPE),
                        subtopic_id=subtopic_id,
                        proposition_index=prop_index,
                        audio_index=audio_index,
                    )
                )
            return assets

    async def save_audio(self, asset: AudioAsset, era_id: Optional[str] = None) -> None:
        if not asset.subtopic_id:
            raise ValueError("Audio asset has no subtopic id")
        filename = audio_filename(
            asset.subtopic_id, asset.proposition_index or 0, asset.audio_index or 0, asset.extension, era_id=era_id
        )
        async with self._lock:
            self._ensure_root()
            report = MirrorWriteReport()
            self._write(report, filename, asset.data)
        if report.failed:
            raise BackendUnavailableError(self.name, report.failed[filename])

    async def clear_all(self) -> None:
        async with self._lock:
            if not self.root.exists():
                return
            targets = [self.root / name for name in (APP_STATE_FILE, THEMES_FILE, SUBTOPICS_FILE)]
            targets.extend(self.root.glob("audio-*"))
            for path in targets:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    raise BackendUnavailableError(self.name, f"Cannot delete {path.name}: {exc}") from exc
            logger.info("[MIRROR] Cleared mirror directory %s", self.root)

    async def load_legacy(self) -> LegacyBundle:
        async with self._lock:
            raw = self._read_json(THEMES_FILE)
            if not isinstance(raw, list) or not raw:
                raw = self._read_json(SUBTOPICS_FILE)
            if not isinstance(raw, list) or not raw:
                return LegacyBundle()

            audio = []
            for subtopic in _legacy_subtopics(raw):
                subtopic_id = subtopic.get("id")
                if not isinstance(subtopic_id, str):
                    continue
                for prop_index, prop in enumerate(subtopic.get("propositions") or []):
                    count = prop.get("audioCount", 0) if isinstance(prop, dict) else 0
                    for audio_index in range(int(count or 0)):
                        asset = self._read_audio(subtopic_id, prop_index, audio_index, None)
                        if asset is not None:
                            audio.append(asset)
            logger.info("[MIRROR] Found legacy snapshot with %s audio files", len(audio))
            return LegacyBundle(raw=raw, audio=audio)


def _legacy_subtopics(raw: Iterable[Any]) -> Iterable[Dict[str, Any]]:
    for item in raw:
        if not isinstance(item, dict):
            continue
        if "name" in item and isinstance(item.get("subtopics"), list):
            for subtopic in item["subtopics"]:
                if isinstance(subtopic, dict):
                    yield subtopic
        else:
            yield item
