import httpx
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from fanreply.core.config import Settings, settings as default_settings
from fanreply.core.errors import GenerationFailed
from fanreply.core.logging import preview
from fanreply.services.prompt_builder import DEFAULT_PROMPT, PersonaLibrary

logger = logging.getLogger("fanreply.ai_service")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

# keys the generation webhook has used for the reply, checked in this order
REPLY_FIELDS: Sequence[str] = ("output", "response", "text", "reply", "message")


@dataclass
class GenerationResult:
    text: str
    latency_ms: int
    persona_used: str


def extract_reply_text(payload: Any, fields: Sequence[str] = REPLY_FIELDS) -> str:
    """Return the first non-empty string found under `fields`.

    n8n-style endpoints sometimes wrap the result in a one-element list.
    """
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    if not isinstance(payload, dict):
        return ""
    for name in fields:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class AIService:
    def __init__(
        self,
        settings: Settings = default_settings,
        personas: Optional[PersonaLibrary] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.personas = personas or PersonaLibrary(settings.personas_dir)
        self._transport = transport

    def resolve_prompt(
        self, persona_id: Optional[str], creator_name: Optional[str] = None, custom_rules: Optional[List[str]] = None
    ) -> tuple[str, str]:
        if persona_id:
            prompt = self.personas.build_prompt(persona_id, creator_name, custom_rules)
            if prompt:
                return prompt, persona_id
            logger.warning("Persona %s not found, using default prompt", persona_id)
        return DEFAULT_PROMPT, "default"

    async def generate(
        self,
        fan_message: str,
        persona_id: Optional[str] = None,
        creator_id: Optional[int] = None,
        creator_name: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        custom_rules: Optional[List[str]] = None,
    ) -> GenerationResult:
        """Generate a reply to `fan_message`. Raises GenerationFailed; never returns empty text."""
        system_prompt, persona_used = self.resolve_prompt(persona_id, creator_name, custom_rules)

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.settings.ai_timeout_seconds, transport=self._transport) as client:
                if self.settings.ai_webhook_url:
                    text = await self._call_webhook(client, fan_message, system_prompt, history)
                elif self.settings.openai_api_key:
                    text = await self._call_openai(client, fan_message, system_prompt, history)
                else:
                    raise GenerationFailed("No AI backend configured (set AI_WEBHOOK_URL or OPENAI_API_KEY)")
        except httpx.HTTPStatusError as exc:
            logger.error("AI endpoint HTTP error: %s %s", exc.response.status_code, exc.response.text[:200])
            raise GenerationFailed(f"AI endpoint returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:  # network errors, timeouts
            logger.error("AI endpoint request failed: %s", exc)
            raise GenerationFailed(f"AI endpoint request failed: {exc}") from exc
        latency_ms = int((time.perf_counter() - started) * 1000)

        if not text:
            raise GenerationFailed("AI endpoint returned an empty reply")
        logger.info(
            "Generated reply creator=%s persona=%s in %dms: %r", creator_id, persona_used, latency_ms, preview(text)
        )
        return GenerationResult(text=text, latency_ms=latency_ms, persona_used=persona_used)

    async def _call_webhook(
        self, client: httpx.AsyncClient, fan_message: str, system_prompt: str, history: Optional[List[Dict[str, str]]]
    ) -> str:
        body: Dict[str, Any] = {"chatInput": fan_message, "systemMessage": system_prompt}
        if history:
            body["chatHistory"] = history
        resp = await client.post(self.settings.ai_webhook_url, json=body)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise GenerationFailed("AI endpoint returned invalid JSON") from exc
        return extract_reply_text(data)

    async def _call_openai(
        self, client: httpx.AsyncClient, fan_message: str, system_prompt: str, history: Optional[List[Dict[str, str]]]
    ) -> str:
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history or []:
            if turn.get("role") in ("user", "assistant") and turn.get("content"):
                messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": fan_message})

        resp = await client.post(
            OPENAI_CHAT_URL,
            json={"model": self.settings.openai_model, "messages": messages, "max_tokens": 200},
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
        )
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise GenerationFailed("OpenAI returned invalid JSON") from exc
        try:
            return (data["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationFailed("Unexpected OpenAI response shape") from exc
