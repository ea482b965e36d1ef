"""Turns parsed import records into a Subtopic with its propositions."""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from propositions_backend.services.entity_tree import (
    DEFAULT_LABELS,
    Proposition,
    PropositionType,
    Subtopic,
    now_ms,
)
from propositions_backend.services.errors import ImportRejectedError
from propositions_backend.services.identity import fallback_id
from propositions_backend.services.import_parser import ImportDiagnostics

MISSING_SUBTOPIC_TEXT = "The first record must include a 'texto' field with the subtopic content."
EMPTY_IMPORT = "The content does not contain any record."


@dataclass
class ImportEntry:
    text: str
    type: PropositionType
    label: str


@dataclass
class ImportPreview:
    subtopic_text: str
    entries: List[ImportEntry] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    @property
    def can_import(self) -> bool:
        return bool(self.subtopic_text) and not self.issues


def _record_text(record: Any) -> str:
    if isinstance(record, str):
        return record
    if isinstance(record, dict) and isinstance(record.get("texto"), str):
        return record["texto"]
    if isinstance(record, (int, float)) and not isinstance(record, bool):
        return str(record)
    return ""


def _record_type(record: Any) -> PropositionType:
    if isinstance(record, dict):
        return PropositionType.parse(record.get("tipo")) or PropositionType.CUSTOM
    return PropositionType.CUSTOM


def _record_label(record: Any, prop_type: PropositionType) -> str:
    if isinstance(record, dict):
        label = record.get("etiqueta")
        if isinstance(label, str) and label.strip():
            return label.strip()
    return DEFAULT_LABELS[prop_type]


def preview_import(diagnostics: ImportDiagnostics) -> ImportPreview:
    if not diagnostics.success:
        return ImportPreview(subtopic_text="", issues=[diagnostics.error or EMPTY_IMPORT])

    records = diagnostics.parsed or []
    if not records:
        return ImportPreview(subtopic_text="", issues=[EMPTY_IMPORT])

    head, *rest = records
    subtopic_text = ""
    if isinstance(head, dict) and isinstance(head.get("texto"), str):
        subtopic_text = head["texto"].strip()

    issues: List[str] = []
    if not subtopic_text:
        issues.append(MISSING_SUBTOPIC_TEXT)

    entries: List[ImportEntry] = []
    for index, record in enumerate(rest):
        text = _record_text(record).strip()
        if not text:
            issues.append(f"Proposition {index + 1} has no text.")
            continue
        prop_type = _record_type(record)
        entries.append(ImportEntry(text=text, type=prop_type, label=_record_label(record, prop_type)))

    return ImportPreview(subtopic_text=subtopic_text, entries=entries, issues=issues)


def build_subtopic_from_import(
    diagnostics: ImportDiagnostics,
    subtopic_id: Optional[str] = None,
    now: Optional[int] = None,
) -> Subtopic:
    """Build a fully expanded subtopic: the condition first, then one proposition per record."""
    preview = preview_import(diagnostics)
    if not preview.can_import:
        raise ImportRejectedError("Import content was rejected.", preview.issues)

    timestamp = now if now is not None else now_ms()
    resolved_id = subtopic_id or f"subtopic-{timestamp}"

    propositions = [
        Proposition(
            id=fallback_id(resolved_id, "prop", 0),
            type=PropositionType.CONDITION,
            label=DEFAULT_LABELS[PropositionType.CONDITION],
            text=preview.subtopic_text,
        )
    ]
    for offset, entry in enumerate(preview.entries, start=1):
        propositions.append(
            Proposition(
                id=fallback_id(resolved_id, "prop", offset),
                type=entry.type,
                label=entry.label,
                text=entry.text,
            )
        )

    return Subtopic(
        id=resolved_id,
        text=preview.subtopic_text,
        propositions=propositions,
        created_at=timestamp,
        updated_at=timestamp,
    )
