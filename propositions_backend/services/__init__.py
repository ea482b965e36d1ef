"""Services for the propositions backend."""

from .entity_tree import AppState, AudioAsset, Era, Proposition, PropositionType, Subtopic, Theme
from .sync_orchestrator import LoadHint, LoadResult, SaveReport, SyncOrchestrator

__all__ = [
    'AppState',
    'AudioAsset',
    'Era',
    'LoadHint',
    'LoadResult',
    'Proposition',
    'PropositionType',
    'SaveReport',
    'Subtopic',
    'SyncOrchestrator',
    'Theme',
]
