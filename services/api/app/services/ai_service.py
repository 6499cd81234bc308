"""Provider-agnostic AI draft generator for follow-up emails."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import jsonschema
from pydantic import BaseModel

from app.config import Settings
from app.models.base import utcnow
from app.models.follow_up import FollowUp
from app.schemas.automation import AIPreferences
from app.services.ai_prompts import (
    APPROACH_GUIDELINES,
    DEFAULT_APPROACH_GUIDELINE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TONE_GUIDELINE,
    FOLLOW_UP_DRAFT_SCHEMA,
    FOLLOW_UP_SYSTEM_PROMPT,
    FOLLOW_UP_USER_PROMPT,
    LENGTH_MAX_TOKENS,
    TONE_GUIDELINES,
    TONE_TEMPERATURE,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8


class DraftGenerationError(Exception):
    """The provider failed or returned output that is not a usable draft."""


class FollowUpDraftContext(BaseModel):
    subject: str
    recipients: list[str]
    sent_at: datetime
    content: str = ""
    days_since_original: int
    follow_up_reason: str = "No response received"
    priority: str = "medium"

    @classmethod
    def from_follow_up(cls, follow_up: FollowUp, now: datetime | None = None) -> "FollowUpDraftContext":
        now = now or utcnow()
        return cls(
            subject=follow_up.original_subject,
            recipients=list(follow_up.original_recipients or []),
            sent_at=follow_up.original_sent_at,
            content=follow_up.context_summary or "",
            days_since_original=max((now - follow_up.original_sent_at).days, 0),
            follow_up_reason=follow_up.follow_up_reason or "No response received",
            priority=getattr(follow_up.priority, "value", follow_up.priority),
        )


class FollowUpDraft(BaseModel):
    subject: str
    body: str
    tone: str
    approach: str
    confidence: float = DEFAULT_CONFIDENCE
    reasoning: str | None = None


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    @abstractmethod
    async def complete(self, system: str, prompt: str, temperature: float, max_tokens: int) -> str:
        """Send a prompt and return the completion text."""
        ...


class OpenAIProvider(AIProvider):
    """OpenAI-compatible API provider."""

    def __init__(self, api_key: str, model: str) -> None:
        import openai

        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._model = model

    async def complete(self, system: str, prompt: str, temperature: float, max_tokens: int) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or "{}"


class AnthropicProvider(AIProvider):
    """Anthropic API provider."""

    def __init__(self, api_key: str, model: str) -> None:
        import anthropic

        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model

    async def complete(self, system: str, prompt: str, temperature: float, max_tokens: int) -> str:
        response = await self._client.messages.create(
            model=self._model,
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "user", "content": prompt + "\n\nRespond ONLY with valid JSON, no other text."},
            ],
        )
        return response.content[0].text


def _validate_json(data: dict[str, Any], schema: dict[str, Any]) -> bool:
    """Validate parsed JSON against schema."""
    try:
        jsonschema.validate(instance=data, schema=schema)
        return True
    except jsonschema.ValidationError as e:
        logger.warning("AI output validation failed: %s", e.message)
        return False


def _parse_json_safe(text: str) -> dict[str, Any] | None:
    """Parse JSON from AI response, handling markdown code blocks."""
    text = text.strip()
    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.error("Failed to parse AI response as JSON")
        return None
    return data if isinstance(data, dict) else None


def temperature_for_tone(tone: str | None) -> float:
    return TONE_TEMPERATURE.get(tone or "", DEFAULT_TEMPERATURE)


def max_tokens_for_length(length: str | None) -> int:
    return LENGTH_MAX_TOKENS.get(length or "", DEFAULT_MAX_TOKENS)


def build_prompts(context: FollowUpDraftContext, preferences: AIPreferences) -> tuple[str, str]:
    """Render the system and user prompts for one draft request."""
    custom = ""
    if preferences.custom_instructions:
        custom = f"\nCUSTOM INSTRUCTIONS: {preferences.custom_instructions}\n"

    system = FOLLOW_UP_SYSTEM_PROMPT.format(
        language=preferences.language,
        days_since_original=context.days_since_original,
        priority=context.priority,
        follow_up_reason=context.follow_up_reason,
        tone=preferences.tone,
        approach=preferences.approach,
        tone_guidelines=TONE_GUIDELINES.get(preferences.tone, DEFAULT_TONE_GUIDELINE),
        approach_guidelines=APPROACH_GUIDELINES.get(preferences.approach, DEFAULT_APPROACH_GUIDELINE),
        custom_instructions=custom,
    )
    user = FOLLOW_UP_USER_PROMPT.format(
        subject=context.subject,
        recipients=", ".join(context.recipients),
        sent_at=context.sent_at.date().isoformat(),
        content=context.content[:8000] or "(not available)",  # Truncate for token limits
        days_since_original=context.days_since_original,
        follow_up_reason=context.follow_up_reason,
        priority=context.priority,
    )
    return system, user


class AIService:
    """Generates follow-up drafts through the configured provider."""

    def __init__(self, settings: Settings, provider: AIProvider | None = None) -> None:
        if provider is not None:
            self._provider = provider
        elif settings.ai_provider == "openai":
            self._provider = OpenAIProvider(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.openai_model,
            )
        elif settings.ai_provider == "anthropic":
            self._provider = AnthropicProvider(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.anthropic_model,
            )
        else:
            raise ValueError(f"Unknown AI provider: {settings.ai_provider}")

    async def generate_follow_up_draft(
        self,
        context: FollowUpDraftContext,
        preferences: AIPreferences | None = None,
    ) -> FollowUpDraft:
        """Generate one follow-up draft.

        Raises:
            DraftGenerationError: if the provider call fails or its output does
                not validate against ``FOLLOW_UP_DRAFT_SCHEMA``.
        """
        preferences = preferences or AIPreferences()
        system, prompt = build_prompts(context, preferences)

        try:
            raw = await self._provider.complete(
                system,
                prompt,
                temperature=temperature_for_tone(preferences.tone),
                max_tokens=max_tokens_for_length(preferences.max_length),
            )
        except Exception as e:
            logger.error("AI provider call failed: %s", e)
            raise DraftGenerationError(f"AI provider error: {e}") from e

        data = _parse_json_safe(raw)
        if data is None or not _validate_json(data, FOLLOW_UP_DRAFT_SCHEMA):
            raise DraftGenerationError("AI response was not a valid follow-up draft")

        return FollowUpDraft(
            subject=data["subject"],
            body=data["body"],
            tone=data.get("tone") or preferences.tone,
            approach=data.get("approach") or preferences.approach,
            confidence=data.get("confidence", DEFAULT_CONFIDENCE),
            reasoning=data.get("reasoning"),
        )


_ai_service: AIService | None = None


def get_ai_service(settings: Settings) -> AIService:
    global _ai_service
    if _ai_service is None:
        _ai_service = AIService(settings)
    return _ai_service
