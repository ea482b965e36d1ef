"""Common interface for the primary, mirror and remote stores."""

import abc
from dataclasses import dataclass, field
from typing import Any, List, Optional

from propositions_backend.services.entity_tree import AppState, AudioAsset


@dataclass
class LegacyBundle:
    """Raw pre-era data a backend still exposes, plus its flat audio rows."""

    raw: Any = None
    audio: List[AudioAsset] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.raw


class StorageBackend(abc.ABC):
    """
    Async storage backend.

    Implementations serialize through ``AppState.to_dict()`` and never keep a
    reference to the caller's tree. Every I/O failure, timeouts included, is
    raised as ``BackendUnavailableError``.
    """

    name: str = "backend"

    @abc.abstractmethod
    async def load_state(self) -> Optional[Any]:
        """Return the raw current-schema document, or None when nothing is stored."""

    @abc.abstractmethod
    async def save_state(self, state: AppState) -> Any:
        ...

    @abc.abstractmethod
    async def load_audio(self, subtopic_id: str) -> List[AudioAsset]:
        """Audio rows for ``subtopic_id`` ordered by proposition then audio index."""

    @abc.abstractmethod
    async def save_audio(self, asset: AudioAsset, era_id: Optional[str] = None) -> None:
        ...

    @abc.abstractmethod
    async def clear_all(self) -> None:
        ...

    async def load_legacy(self) -> LegacyBundle:
        return LegacyBundle()

    async def close(self) -> None:
        return None
