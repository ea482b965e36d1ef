from propositions_backend.services.identity import ensure_id, fallback_id, normalize_id
from propositions_backend.services.import_parser import (
    EMPTY_INPUT_ERROR,
    FIX_BACKSLASHES,
    FIX_DOUBLE_BRACES,
    FIX_TRIMMED,
    FIX_WRAPPED_OBJECT,
    UNPARSEABLE_ERROR,
    extract_json_segments,
    parse_import_text,
)


def test_normalize_id_trims_strings_and_stringifies_numbers():
    assert normalize_id("  abc ") == "abc"
    assert normalize_id("   ") is None
    assert normalize_id(42) == "42"
    assert normalize_id(3.0) == "3"
    assert normalize_id(True) is None
    assert normalize_id(float("nan")) is None
    assert normalize_id({"id": 1}) is None


def test_ensure_id_uses_positional_fallback():
    assert ensure_id(None, fallback_id("theme-a", "subtopic", 2)) == "theme-a-subtopic-2"
    assert ensure_id(" sub-9 ", "unused") == "sub-9"


def test_parse_plain_list_applies_no_fixes():
    text = '[{"texto":"Si P entonces Q"},{"tipo":"reciproco","texto":"Si Q entonces P"}]'
    result = parse_import_text(text)

    assert result.success is True
    assert result.applied_fixes == []
    assert result.parsed[1]["tipo"] == "reciproco"
    assert result.normalized_text == text


def test_parse_bare_object_is_wrapped():
    result = parse_import_text('{"texto":"X"}')

    assert result.success is True
    assert result.parsed == [{"texto": "X"}]
    assert FIX_WRAPPED_OBJECT in result.applied_fixes


def test_parse_double_braces_rewritten_as_list():
    result = parse_import_text('{{"texto":"X"}}')

    assert result.success is True
    assert result.parsed == [{"texto": "X"}]
    assert FIX_DOUBLE_BRACES in result.applied_fixes


def test_parse_garbage_reports_error():
    result = parse_import_text("not json at all")

    assert result.success is False
    assert result.parsed is None
    assert result.error == UNPARSEABLE_ERROR


def test_parse_empty_input_reports_error():
    result = parse_import_text("   \n ")

    assert result.success is False
    assert result.parsed is None
    assert result.error == EMPTY_INPUT_ERROR


def test_parse_records_trimmed_whitespace():
    result = parse_import_text('\n  [{"texto":"A"}]  \n')

    assert result.success is True
    assert result.applied_fixes == [FIX_TRIMMED]
    assert result.normalized_text == '[{"texto":"A"}]'


def test_parse_escapes_stray_backslashes():
    result = parse_import_text(r'[{"texto":"Si \alpha > 0 entonces \beta"}]')

    assert result.success is True
    assert FIX_BACKSLASHES in result.applied_fixes
    assert result.parsed[0]["texto"] == r"Si \alpha > 0 entonces \beta"


def test_parse_extracts_json_from_surrounding_prose():
    text = 'Claro, aquí tienes: [{"texto":"A"},{"tipo":"inverso","texto":"B"}] Espero que sirva.'
    result = parse_import_text(text)

    assert result.success is True
    assert result.normalized_text == '[{"texto":"A"},{"tipo":"inverso","texto":"B"}]'
    assert len(result.parsed) == 2


def test_parse_rejects_scalar_json():
    result = parse_import_text("42")

    assert result.success is False
    assert result.parsed is None


def test_extract_segments_ignores_brackets_inside_strings():
    segments = extract_json_segments('x {"a": "[not a list}"} y [1, 2]')
    assert segments == ['{"a": "[not a list}"}', "[1, 2]"]
