import json
from pathlib import Path

import pytest

from propositions_backend.services.backends import mirror_store
from propositions_backend.services.backends.mirror_store import (
    APP_STATE_FILE,
    SUBTOPICS_FILE,
    THEMES_FILE,
    MirrorStore,
    audio_filename,
)
from propositions_backend.services.entity_tree import AppState, AudioAsset
from propositions_backend.services.legacy_migration import migrate_legacy
from propositions_backend.services.merge_engine import close_cycle
from propositions_backend.tests.factories import FIXED_NOW, make_state


def test_audio_filename_scopes_by_era():
    assert audio_filename("s-1", 0, 2, "webm", era_id="era-1") == "audio-era-1-s-1-0-2.webm"
    assert audio_filename("s-1", 0, 2, "ogg") == "audio-s-1-0-2.ogg"


@pytest.mark.asyncio
async def test_save_writes_state_projection_and_audio(tmp_path):
    store = MirrorStore(str(tmp_path / "mirror"))

    report = await store.save_state(make_state())

    root = tmp_path / "mirror"
    assert report.ok
    assert set(report.written) == {"audio-era-1-sub-1-0-0.webm", APP_STATE_FILE, THEMES_FILE}
    assert (root / "audio-era-1-sub-1-0-0.webm").read_bytes() == b"\x01\x02\x03"

    document = json.loads((root / APP_STATE_FILE).read_text(encoding="utf-8"))
    prop = document["currentEra"]["themes"][0]["subtopics"][0]["propositions"][0]
    assert prop["audios"] == []
    assert prop["audioCount"] == 1

    themes = json.loads((root / THEMES_FILE).read_text(encoding="utf-8"))
    assert themes[0]["name"] == "Cálculo"
    assert themes[0]["subtopics"][1]["propositions"] is None


@pytest.mark.asyncio
async def test_load_rehydrates_audio(tmp_path):
    store = MirrorStore(str(tmp_path))
    original = close_cycle(make_state(), now=FIXED_NOW + 1)
    await store.save_state(original)

    state = AppState.from_dict(await store.load_state(), now=FIXED_NOW)

    assert state.era_history[0].themes[0].subtopics[0].propositions[0].audios[0].data == b"\x01\x02\x03"
    assert state.era_history[0].themes[0].subtopics[0].propositions[0].audios[0].mime_type == "audio/webm"
    assert state.current_era.id == original.current_era.id


@pytest.mark.asyncio
async def test_load_falls_back_to_legacy_audio_names(tmp_path):
    document = make_state(audio=b"").to_dict()
    prop = document["currentEra"]["themes"][0]["subtopics"][0]["propositions"][1]
    prop["audios"] = []
    prop["audioCount"] = 1
    (tmp_path / APP_STATE_FILE).write_text(json.dumps(document), encoding="utf-8")
    (tmp_path / "audio-sub-1-1-0.ogg").write_bytes(b"old-clip")

    loaded = await MirrorStore(str(tmp_path)).load_state()

    audio = loaded["currentEra"]["themes"][0]["subtopics"][0]["propositions"][1]["audios"][0]
    assert audio["mimeType"] == "audio/ogg"
    state = AppState.from_dict(loaded, now=FIXED_NOW)
    assert state.current_era.themes[0].subtopics[0].propositions[1].audios[0].data == b"old-clip"


@pytest.mark.asyncio
async def test_missing_or_invalid_app_state_loads_none(tmp_path):
    store = MirrorStore(str(tmp_path))
    assert await store.load_state() is None

    (tmp_path / APP_STATE_FILE).write_text("{broken", encoding="utf-8")
    assert await store.load_state() is None


@pytest.mark.asyncio
async def test_write_failure_is_reported_and_other_files_still_written(tmp_path, monkeypatch):
    store = MirrorStore(str(tmp_path))
    original_write_text = Path.write_text

    def failing_write_text(self, *args, **kwargs):
        if self.name == THEMES_FILE:
            raise PermissionError("permission revoked")
        return original_write_text(self, *args, **kwargs)

    monkeypatch.setattr(mirror_store.Path, "write_text", failing_write_text)

    report = await store.save_state(make_state())

    assert not report.ok
    assert "permission revoked" in report.failed[THEMES_FILE]
    assert APP_STATE_FILE in report.written
    assert (tmp_path / APP_STATE_FILE).exists()


@pytest.mark.asyncio
async def test_load_audio_parses_legacy_names(tmp_path):
    store = MirrorStore(str(tmp_path))
    (tmp_path / "audio-s-1-1-0.webm").write_bytes(b"c")
    (tmp_path / "audio-s-1-0-1.webm").write_bytes(b"b")
    (tmp_path / "audio-s-1-0-0.mp3").write_bytes(b"a")
    (tmp_path / "audio-s-10-0-0.webm").write_bytes(b"other")

    assets = await store.load_audio("s-1")

    assert [asset.data for asset in assets] == [b"a", b"b", b"c"]
    assert assets[0].mime_type == "audio/mpeg"


@pytest.mark.asyncio
async def test_save_audio_and_clear_all(tmp_path):
    store = MirrorStore(str(tmp_path))
    await store.save_audio(AudioAsset(data=b"x", subtopic_id="s-1", proposition_index=2, audio_index=3), era_id="e")
    await store.save_state(make_state())

    assert (tmp_path / "audio-e-s-1-2-3.webm").read_bytes() == b"x"

    await store.clear_all()

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_load_legacy_reads_subtopics_file_with_audio(tmp_path):
    (tmp_path / SUBTOPICS_FILE).write_text(
        json.dumps([{"id": "s-1", "text": "A", "propositions": [{"text": "p0", "audioCount": 1}]}]),
        encoding="utf-8",
    )
    (tmp_path / "audio-s-1-0-0.webm").write_bytes(b"legacy")

    bundle = await MirrorStore(str(tmp_path)).load_legacy()
    state = migrate_legacy(bundle.raw, bundle.audio, now=FIXED_NOW)

    assert state.current_era.themes[0].subtopics[0].propositions[0].audios[0].data == b"legacy"
