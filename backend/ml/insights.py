"""
Velocity Insights — short merchant-facing prose attached to each prediction.

The text is opaque to the rest of the engine: it is stored on the
prediction record and copied onto alerts, never parsed.

Generators:
  - TemplateInsightGenerator: deterministic one-liner, no network.
  - GeminiInsightGenerator: Gemini `generateContent` over REST; falls back
    to the template text on any failure so analysis never blocks on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import structlog

from core.config import get_settings

logger = structlog.get_logger()

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
HIGH_VELOCITY_UNITS = 10


@dataclass(frozen=True)
class InsightContext:
    product_title: str
    current_stock: int
    daily_velocity: float
    weekly_velocity: float
    trend: str
    acceleration: float
    history_points: int = 0


class InsightGenerator(ABC):
    @abstractmethod
    async def generate_insight(self, context: InsightContext) -> str:
        ...


class TemplateInsightGenerator(InsightGenerator):
    async def generate_insight(self, context: InsightContext) -> str:
        return template_insight(context)


def template_insight(context: InsightContext) -> str:
    pace = "High velocity detected." if context.daily_velocity > HIGH_VELOCITY_UNITS else "Normal velocity."
    return f"Velocity: {context.daily_velocity:.1f} units/day ({context.trend}). {pace}"


def build_prompt(context: InsightContext) -> str:
    return f"""
Analyze this product's sales velocity and inventory situation:

Product: {context.product_title}
Current Stock: {context.current_stock} units
Daily Velocity: {context.daily_velocity:.2f} units/day
Weekly Velocity: {context.weekly_velocity:.0f} units
Velocity Trend: {context.trend}
Velocity Acceleration: {context.acceleration:.2f} units/day change

Historical Data Points: {context.history_points}

Please provide:
1. Key insights about the velocity pattern
2. Risk assessment for stockouts
3. Specific recommendations for the merchant
4. Urgency level and reasoning

Be concise but actionable. Focus on business impact.
"""


class GeminiInsightGenerator(InsightGenerator):
    """Calls Gemini over REST. Any failure degrades to the template text."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        max_chars: int = 500,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_chars = max_chars
        self.timeout = timeout
        self._client = client

    async def generate_insight(self, context: InsightContext) -> str:
        body = {"contents": [{"parts": [{"text": build_prompt(context)}]}]}
        url = f"{GEMINI_BASE_URL}/{self.model}:generateContent"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, params={"key": self.api_key}, json=body, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, params={"key": self.api_key}, json=body)
            response.raise_for_status()
            text = _extract_text(response.json())
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("insights.generation_failed", product=context.product_title, error=str(exc))
            return template_insight(context)

        if not text:
            return template_insight(context)
        return text[: self.max_chars]


def _extract_text(payload: dict) -> str:
    parts = payload["candidates"][0]["content"]["parts"]
    return "".join(part.get("text", "") for part in parts).strip()


def build_insight_generator() -> InsightGenerator:
    """Gemini when an API key is configured, otherwise the template."""
    settings = get_settings()
    if settings.gemini_api_key:
        return GeminiInsightGenerator(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            max_chars=settings.insight_max_chars,
            timeout=settings.insight_timeout_seconds,
        )
    return TemplateInsightGenerator()
