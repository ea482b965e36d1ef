"""Text-generation settings: env defaults merged with the persisted ``settings`` document."""

import logging
import os
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from propositions_backend.services.storage_repository import SETTINGS_KEY, get_item, put_item
from propositions_backend.services.text_generation import DEFAULT_MODEL, DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger("propositions_backend")

SETTINGS_FIELDS = ("groqModel", "groqPrompt")


def get_env_settings_defaults() -> Dict[str, Any]:
    return {
        "groqModel": os.getenv("DEFAULT_GROQ_MODEL", DEFAULT_MODEL),
        "groqPrompt": os.getenv("DEFAULT_GROQ_PROMPT", DEFAULT_SYSTEM_PROMPT),
    }


def merge_settings(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    settings = get_env_settings_defaults()
    if not isinstance(overrides, dict):
        return settings

    for key in SETTINGS_FIELDS:
        value = overrides.get(key)
        # blank values fall back to the default
        if isinstance(value, str) and value.strip():
            settings[key] = value.strip() if key == "groqModel" else value
    return settings


async def load_settings(session: Optional[AsyncSession] = None) -> Dict[str, Any]:
    if session is None:
        return get_env_settings_defaults()
    overrides = await get_item(session, SETTINGS_KEY)
    return merge_settings(overrides)


async def save_settings(session: AsyncSession, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Persist settings overrides and return the merged settings."""
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object.")

    stored = {key: payload[key] for key in SETTINGS_FIELDS if key in payload}
    await put_item(session, SETTINGS_KEY, stored)
    logger.info("[SETTINGS] Saved settings overrides: %s", sorted(stored))
    return merge_settings(stored)
