"""
SQLAlchemy models for the propositions storage layer.

The same two tables back both the primary local store (SQLite) and the
remote relational store (Postgres): one JSON document per logical key, and
one row per recorded audio clip.
"""

from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, Index, Integer, LargeBinary, Text
)
from sqlalchemy.dialects.postgresql import BYTEA, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite local store, tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
BinaryData = LargeBinary().with_variant(BYTEA(), "postgresql")


class StorageItem(Base):
    """One JSON document per logical key (``app-state``, ``settings``, legacy ``themes``/``subtopics``)."""
    __tablename__ = "storage_items"

    key = Column(Text, primary_key=True)
    data = Column(JSONDocument, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<StorageItem(key={self.key})>"


class AudioBlob(Base):
    """A recorded clip keyed by ``(subtopic_id, prop_index, audio_index)``."""
    __tablename__ = "audio_blobs"

    id = Column(Text, primary_key=True)  # {subtopic_id}-{prop_index}-{audio_index}
    subtopic_id = Column(Text, nullable=False)
    prop_index = Column(Integer, nullable=False, default=0)
    audio_index = Column(Integer, nullable=False, default=0)
    mime_type = Column(Text, nullable=False, default="audio/webm")
    data = Column(BinaryData, nullable=False)
    timestamp = Column(BigInteger)  # epoch milliseconds

    __table_args__ = (
        Index("idx_audio_blobs_subtopic", "subtopic_id"),
    )

    def __repr__(self):
        return f"<AudioBlob(id={self.id}, mime_type={self.mime_type})>"


def audio_blob_id(subtopic_id: str, prop_index: int, audio_index: int) -> str:
    return f"{subtopic_id}-{prop_index}-{audio_index}"
