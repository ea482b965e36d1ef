"""
Proposition text generation over an OpenAI-compatible chat-completions API (Groq by default).

Every public coroutine returns a ``GenerationResult`` and never raises: network
failures, HTTP errors and malformed model output all come back as ``error``.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from propositions_backend.config import GROQ_BASE_URL, GROQ_TIMEOUT_SECONDS
from propositions_backend.services.entity_tree import (
    PropositionType,
    Subtopic,
    build_standard_propositions,
)

logger = logging.getLogger("propositions_backend")

DEFAULT_MODEL = "llama-3.3-70b-versatile"

DEFAULT_SYSTEM_PROMPT = """Eres un asistente que genera proposiciones lógicas. Debes responder ÚNICAMENTE con un objeto JSON válido y sin texto adicional antes o después.

Recibirás una condición base y el tipo de proposición a generar (recíproco, inverso o contra-recíproco). Debes devolver únicamente la proposición solicitada.

Formato de salida (SOLO JSON, sin explicaciones):
{
  "proposicion": "texto de la proposición solicitada"
}"""

DEFAULT_REWRITE_PROMPT = """Eres un asistente que reescribe proposiciones lógicas. Recibirás una instrucción en español que siempre incluye una condición base y el tipo de proposición deseado.

Responde ÚNICAMENTE con un objeto JSON válido y sin texto adicional antes o después, usando el formato:
{
  "proposicion": "texto de la proposición reescrita"
}

El texto de la proposición debe ser claro, gramaticalmente correcto y mantener coherencia lógica con la instrucción recibida."""

VARIANT_LABELS: Dict[PropositionType, str] = {
    PropositionType.RECIPROCAL: "recíproco",
    PropositionType.INVERSE: "inverso",
    PropositionType.CONTRAPOSITIVE: "contra-recíproco",
}

TEMPERATURE = 0.7
MAX_TOKENS = 512
RESPONSE_KEY = "proposicion"


@dataclass
class GenerationResult:
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


@dataclass
class ExpansionResult:
    subtopic: Subtopic
    error: Optional[str] = None


def resolve_api_key() -> Optional[str]:
    return os.getenv("GROQ_API_KEY_CUSTOM") or os.getenv("GROQ_API_KEY")


def extract_json_from_text(text: str) -> Any:
    if text is None:
        raise ValueError("Model response text is empty")

    normalized = re.sub(r"<think>.*?</think>", "", str(text), flags=re.IGNORECASE | re.DOTALL).strip()
    if not normalized:
        raise json.JSONDecodeError("No JSON object found", str(text), 0)

    try:
        return json.loads(normalized)
    except json.JSONDecodeError:
        pass

    # first decodable object anywhere in the text
    decoder = json.JSONDecoder()
    for index, char in enumerate(normalized):
        if char != "{":
            continue
        try:
            decoded, _ = decoder.raw_decode(normalized[index:])
            return decoded
        except json.JSONDecodeError:
            continue

    raise json.JSONDecodeError("No JSON object found", normalized, 0)


class ChatCompletionClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = GROQ_BASE_URL,
        timeout_seconds: float = GROQ_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def chat(self, model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
            "response_format": {"type": "json_object"},
        }
        url = f"{self.base_url}/v1/chat/completions"
        logger.info("[TEXT GEN] POST %s model=%s", url, model)
        async with self._client() as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            return response.json()

    async def list_models(self) -> List[str]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/v1/models")
            response.raise_for_status()
            payload = response.json()
        entries = payload.get("data") if isinstance(payload, dict) else None
        models = []
        for entry in entries or []:
            model_id = entry.get("id") if isinstance(entry, dict) else None
            if isinstance(model_id, str) and model_id not in models:
                models.append(model_id)
        return models


def _default_client() -> Optional[ChatCompletionClient]:
    api_key = resolve_api_key()
    if not api_key:
        return None
    return ChatCompletionClient(api_key)


MISSING_KEY_ERROR = "GROQ_API_KEY is not configured. Set GROQ_API_KEY_CUSTOM or GROQ_API_KEY."


async def _complete(
    client: Optional[ChatCompletionClient],
    system_prompt: str,
    user_message: str,
    model: Optional[str],
    action: str,
) -> GenerationResult:
    client = client or _default_client()
    if client is None:
        return GenerationResult(error=MISSING_KEY_ERROR)

    try:
        data = await client.chat(
            model or DEFAULT_MODEL,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        )
    except httpx.HTTPStatusError as exc:
        logger.error("[TEXT GEN] %s failed with status %s: %s", action, exc.response.status_code, exc.response.text)
        return GenerationResult(
            error=f"Generation API error: {exc.response.status_code} {exc.response.reason_phrase}"
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.exception("[TEXT GEN] %s request failed: %s", action, exc)
        return GenerationResult(error=f"Error while trying to {action}: {exc}")

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not content:
        return GenerationResult(error="Empty response from the generation API")

    try:
        parsed = extract_json_from_text(content)
    except (ValueError, json.JSONDecodeError) as exc:
        logger.warning("[TEXT GEN] %s returned non-JSON content: %s", action, exc)
        return GenerationResult(error=f"Error while trying to {action}: {exc}")

    text = parsed.get(RESPONSE_KEY) if isinstance(parsed, dict) else None
    if not isinstance(text, str) or not text:
        return GenerationResult(error="Generation API response does not have the expected format")
    return GenerationResult(text=text)


async def generate_proposition_variant(
    condition: str,
    variant: Any,
    model: Optional[str] = None,
    system_prompt: Optional[str] = None,
    client: Optional[ChatCompletionClient] = None,
) -> GenerationResult:
    if not isinstance(condition, str) or not condition:
        return GenerationResult(error="Invalid condition")

    variant_type = PropositionType.parse(variant)
    variant_label = VARIANT_LABELS.get(variant_type) if variant_type else None
    if not variant_label:
        return GenerationResult(error="Unsupported proposition type")

    user_message = f"Condición base: {condition}\nTipo solicitado: {variant_label}."
    return await _complete(client, system_prompt or DEFAULT_SYSTEM_PROMPT, user_message, model, "generate the proposition")


async def rewrite_proposition(
    instruction: str,
    model: Optional[str] = None,
    system_prompt: Optional[str] = None,
    client: Optional[ChatCompletionClient] = None,
) -> GenerationResult:
    if not isinstance(instruction, str) or not instruction:
        return GenerationResult(error="Invalid instruction")
    return await _complete(client, system_prompt or DEFAULT_REWRITE_PROMPT, instruction, model, "rewrite the proposition")


async def get_available_models(client: Optional[ChatCompletionClient] = None) -> List[str]:
    """Model ids offered by the API; always contains ``DEFAULT_MODEL``."""
    client = client or _default_client()
    if client is None:
        return [DEFAULT_MODEL]
    try:
        models = await client.list_models()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("[TEXT GEN] Listing models failed; using default: %s", exc)
        return [DEFAULT_MODEL]
    if DEFAULT_MODEL not in models:
        models.insert(0, DEFAULT_MODEL)
    return models


VariantGenerator = Callable[[str, PropositionType], Awaitable[GenerationResult]]


async def expand_subtopic(
    subtopic: Subtopic,
    generator: Optional[VariantGenerator] = None,
) -> ExpansionResult:
    """Fill ``subtopic`` with the condition and its three generated variants.

    On the first failed variant the subtopic is returned unexpanded with the error.
    """
    if generator is None:
        async def generator(condition: str, variant: PropositionType) -> GenerationResult:
            return await generate_proposition_variant(condition, variant)

    variants: Dict[PropositionType, str] = {}
    for variant in VARIANT_LABELS:
        result = await generator(subtopic.text, variant)
        if not result.ok:
            logger.warning("[TEXT GEN] Expansion of %s stopped at %s: %s", subtopic.id, variant.value, result.error)
            return ExpansionResult(subtopic=subtopic, error=result.error)
        variants[variant] = result.text

    expanded = Subtopic(
        id=subtopic.id,
        text=subtopic.text,
        propositions=build_standard_propositions(subtopic, variants),
        title=subtopic.title,
        tags=list(subtopic.tags) if subtopic.tags is not None else None,
        created_at=subtopic.created_at,
        updated_at=subtopic.updated_at,
    )
    return ExpansionResult(subtopic=expanded)
