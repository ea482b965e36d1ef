import pytest

from propositions_backend.services.entity_tree import SAMPLE_THEME_ID, AppState, AudioAsset, PropositionType
from propositions_backend.services.errors import LegacyDataError
from propositions_backend.services.legacy_migration import (
    LEGACY_THEME_ID,
    MIGRATED_ERA_NAME,
    CurrentSnapshot,
    EmptySnapshot,
    LegacySubtopics,
    LegacyThemes,
    classify_snapshot,
    group_legacy_audio,
    migrate_legacy,
    migrate_snapshot,
)
from propositions_backend.tests.factories import FIXED_NOW, make_state


def test_flat_subtopic_list_migrates_into_one_theme():
    raw = [{"text": "A", "propositions": [{"text": "p0"}, {"text": "p1"}]}]
    state = migrate_legacy(raw, now=FIXED_NOW)

    assert len(state.current_era.themes) == 1
    theme = state.current_era.themes[0]
    assert theme.id == LEGACY_THEME_ID
    assert len(theme.subtopics) == 1

    propositions = theme.subtopics[0].propositions
    assert [prop.type for prop in propositions] == [PropositionType.CONDITION, PropositionType.RECIPROCAL]
    assert all(prop.id for prop in propositions)
    assert propositions[0].id != propositions[1].id


def test_migration_ids_are_deterministic():
    raw = [{"text": "A", "propositions": [{"text": "p0"}, {"text": "p1"}]}]
    first = migrate_legacy(raw, now=FIXED_NOW)
    second = migrate_legacy(raw, now=FIXED_NOW)

    assert first.to_dict() == second.to_dict()
    assert first.current_era.themes[0].subtopics[0].id == "legacy-theme-subtopic-0"
    assert first.current_era.themes[0].subtopics[0].propositions[1].id == "legacy-theme-subtopic-0-prop-1"


def test_themed_legacy_list_keeps_theme_ids_and_names():
    raw = {
        "themes": [
            {
                "id": "t-1",
                "name": "Cálculo",
                "subtopics": [
                    {"id": "s-1", "text": "Si P entonces Q", "propositions": ["Si P entonces Q", "Si Q entonces P"]},
                    {"text": "Sin expandir"},
                ],
            },
            {"name": "Sin id", "subtopics": []},
        ]
    }
    state = migrate_legacy(raw, now=FIXED_NOW)

    era = state.current_era
    assert era.id == f"era-migrated-{FIXED_NOW}"
    assert era.name == MIGRATED_ERA_NAME
    assert [theme.id for theme in era.themes] == ["t-1", "legacy-theme-1"]
    assert era.themes[0].subtopics[0].propositions[1].text == "Si Q entonces P"
    assert era.themes[0].subtopics[1].id == "t-1-subtopic-1"
    assert era.themes[0].subtopics[1].propositions is None


def test_flat_audio_rows_are_regrouped_by_key():
    raw = [{"id": "s-1", "text": "A", "propositions": [{"text": "p0"}, {"text": "p1"}]}]
    rows = [
        AudioAsset(data=b"second", subtopic_id="s-1", proposition_index=1, audio_index=1),
        AudioAsset(data=b"first", subtopic_id="s-1", proposition_index=1, audio_index=0),
        AudioAsset(data=b"other", subtopic_id="s-9", proposition_index=0, audio_index=0),
    ]
    state = migrate_legacy(raw, audio_rows=rows, now=FIXED_NOW)

    propositions = state.current_era.themes[0].subtopics[0].propositions
    assert propositions[0].audios == []
    assert [audio.data for audio in propositions[1].audios] == [b"first", b"second"]
    assert [audio.audio_index for audio in propositions[1].audios] == [0, 1]


def test_group_legacy_audio_skips_rows_without_subtopic():
    groups = group_legacy_audio([AudioAsset(data=b"x"), AudioAsset(data=b"y", subtopic_id="s", proposition_index=2)])
    assert list(groups) == ["s"]
    assert list(groups["s"]) == [2]


def test_classify_snapshot_variants():
    assert isinstance(classify_snapshot(None), EmptySnapshot)
    assert isinstance(classify_snapshot([]), EmptySnapshot)
    assert isinstance(classify_snapshot({"themes": [{"name": "T"}]}), LegacyThemes)
    assert isinstance(classify_snapshot([{"text": "S"}]), LegacySubtopics)
    assert isinstance(classify_snapshot(make_state().to_dict(), FIXED_NOW), CurrentSnapshot)


def test_current_schema_passes_through_unchanged():
    document = make_state().to_dict()
    state = migrate_legacy(document, now=FIXED_NOW)

    assert isinstance(state, AppState)
    assert state.to_dict() == document


def test_malformed_legacy_falls_back_to_sample_state():
    raw = [{"name": "Tema", "subtopics": "not-a-list"}]
    state = migrate_legacy(raw, now=FIXED_NOW)

    assert state.current_era.themes[0].id == SAMPLE_THEME_ID


def test_corrupt_audio_falls_back_to_sample_state():
    raw = [{"text": "A", "propositions": [{"text": "p0", "audios": [{"base64": "%%%not-base64"}]}]}]
    state = migrate_legacy(raw, now=FIXED_NOW)

    assert state.current_era.themes[0].id == SAMPLE_THEME_ID


def test_strict_migration_rejects_empty_snapshot():
    with pytest.raises(LegacyDataError):
        migrate_snapshot(EmptySnapshot(), now=FIXED_NOW)
