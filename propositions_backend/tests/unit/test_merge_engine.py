import pytest

from propositions_backend.services.entity_tree import (
    EXTERNAL_THEME_ID,
    EXTERNAL_THEME_NAME,
    REMOTE_THEME_ID,
    Theme,
    edit_subtopic_text,
    rename_theme,
)
from propositions_backend.services.errors import EraNotFoundError
from propositions_backend.services.merge_engine import (
    ExternalSubtopicPayload,
    close_cycle,
    parse_external_payload,
    prepare_state_for_external,
    reopen_era,
    rename_era,
    upsert_external_subtopic,
)
from propositions_backend.tests.factories import FIXED_NOW, make_state, make_subtopic


class TestParseExternalPayload:
    def test_decodes_and_strips_quotes(self):
        payload = parse_external_payload("sub-42%3D%22Si%20P%20entonces%20Q%22")
        assert payload == ExternalSubtopicPayload(id="sub-42", name="Si P entonces Q")

    def test_splits_on_first_equals_only(self):
        payload = parse_external_payload("sub-1=a=b")
        assert payload.name == "a=b"

    @pytest.mark.parametrize("raw", [None, "", "no-separator", "=name", "id=", "id=''"])
    def test_rejects_malformed(self, raw):
        assert parse_external_payload(raw) is None


class TestUpsertExternalSubtopic:
    def test_creates_reserved_theme_on_first_use(self):
        state = make_state()
        outcome = upsert_external_subtopic(state, ExternalSubtopicPayload("ext-1", "Nuevo"), now=FIXED_NOW + 1)

        assert outcome.created and not outcome.updated
        theme = outcome.state.current_era.themes[-1]
        assert theme.id == EXTERNAL_THEME_ID
        assert theme.name == EXTERNAL_THEME_NAME
        assert theme.subtopics[0].propositions is None
        assert outcome.state.current_era.updated_at == FIXED_NOW + 1
        # input untouched
        assert [t.id for t in state.current_era.themes] == ["theme-a"]

    def test_is_idempotent(self):
        payload = ExternalSubtopicPayload("ext-1", "Nuevo")
        once = upsert_external_subtopic(make_state(), payload, now=FIXED_NOW + 1)
        twice = upsert_external_subtopic(once.state, payload, now=FIXED_NOW + 2)

        assert not twice.created and not twice.updated
        assert twice.state.to_dict() == once.state.to_dict()

    def test_padded_id_matches_existing_subtopic(self):
        once = upsert_external_subtopic(make_state(), ExternalSubtopicPayload("ext-1", "X"), now=FIXED_NOW + 1)
        again = upsert_external_subtopic(once.state, ExternalSubtopicPayload(" ext-1 ", "X"), now=FIXED_NOW + 2)

        assert not again.created and not again.updated
        assert [s.id for s in again.state.current_era.themes[-1].subtopics] == ["ext-1"]

    def test_blank_id_leaves_state_unchanged(self):
        state = make_state()
        outcome = upsert_external_subtopic(state, ExternalSubtopicPayload("   ", "X"), now=FIXED_NOW + 1)

        assert outcome.state is state
        assert not outcome.created and not outcome.updated

    def test_rename_keeps_condition_in_sync(self):
        state = make_state()
        state.current_era.themes.append(
            Theme(id=EXTERNAL_THEME_ID, name=EXTERNAL_THEME_NAME, subtopics=[make_subtopic("ext-1", "Viejo")])
        )
        outcome = upsert_external_subtopic(state, ExternalSubtopicPayload("ext-1", "Renombrado"), now=FIXED_NOW + 3)

        assert outcome.updated and not outcome.created
        subtopic = outcome.state.current_era.themes[-1].subtopics[0]
        assert subtopic.text == "Renombrado"
        assert subtopic.propositions[0].text == "Renombrado"
        assert state.current_era.themes[-1].subtopics[0].text == "Viejo"

    def test_remote_theme_variant(self):
        outcome = upsert_external_subtopic(
            make_state(), ExternalSubtopicPayload("r-1", "Remoto"), theme_id=REMOTE_THEME_ID, now=FIXED_NOW
        )
        assert outcome.state.current_era.themes[-1].id == REMOTE_THEME_ID

    def test_prepare_bootstraps_when_missing(self):
        state = prepare_state_for_external(None, now=FIXED_NOW)
        assert state.current_era.id == f"era-auto-{FIXED_NOW}"
        assert state.current_era.themes == []

        original = make_state()
        prepared = prepare_state_for_external(original)
        assert prepared is not original
        assert prepared.to_dict() == original.to_dict()


class TestEraLifecycle:
    def test_close_then_reopen_restores_content(self):
        original = make_state()
        closed = close_cycle(original, now=FIXED_NOW + 10)
        reopened = reopen_era(closed, "era-1", now=FIXED_NOW + 20)

        restored = reopened.current_era
        assert restored.closed_at is None
        assert restored.updated_at == FIXED_NOW + 20
        assert [theme.to_dict() for theme in restored.themes] == [
            theme.to_dict() for theme in original.current_era.themes
        ]
        # the blank era opened by close_cycle is archived in the same slot
        assert reopened.era_history[0].id == f"era-{FIXED_NOW + 10}"
        assert reopened.era_history[0].closed_at == FIXED_NOW + 20

    def test_archived_copy_is_isolated_from_current_mutations(self):
        closed = close_cycle(make_state(), now=FIXED_NOW + 10)
        reopened = reopen_era(closed, "era-1", now=FIXED_NOW + 20)
        archived_before = closed.era_history[0].to_dict()

        edited = edit_subtopic_text(reopened, "theme-a", "sub-1", "Otro texto", now=FIXED_NOW + 30)
        edited.current_era.themes[0].subtopics[0].propositions[0].audios.clear()
        rename_theme(edited, "theme-a", "Cambiado", now=FIXED_NOW + 31)

        assert closed.era_history[0].to_dict() == archived_before

    def test_close_cycle_opens_blank_era(self):
        closed = close_cycle(make_state(), now=FIXED_NOW + 10, name="Segundo ciclo")

        assert closed.current_era.themes == []
        assert closed.current_era.name == "Segundo ciclo"
        assert closed.current_era.closed_at is None
        assert closed.era_history[0].closed_at == FIXED_NOW + 10

    def test_close_cycle_avoids_id_collisions(self):
        state = close_cycle(make_state(), now=FIXED_NOW)
        again = close_cycle(state, now=FIXED_NOW)
        assert again.current_era.id == f"era-{FIXED_NOW}-1"

    def test_reopen_current_is_noop(self):
        state = make_state()
        assert reopen_era(state, "era-1") is state

    def test_reopen_unknown_raises(self):
        with pytest.raises(EraNotFoundError):
            reopen_era(make_state(), "era-missing")

    def test_rename_archived_era(self):
        closed = close_cycle(make_state(), now=FIXED_NOW + 10)
        renamed = rename_era(closed, "era-1", "  Primer ciclo ", now=FIXED_NOW + 11)

        assert renamed.era_history[0].name == "Primer ciclo"
        assert closed.era_history[0].name == "Ciclo 1"

    def test_rename_rejects_blank_and_unknown(self):
        with pytest.raises(ValueError):
            rename_era(make_state(), "era-1", "   ")
        with pytest.raises(EraNotFoundError):
            rename_era(make_state(), "era-missing", "Nombre")
