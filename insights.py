"""Natural-language insights for the monthly report.

The generator is an injected collaborator; ``InsightService`` owns the retry
budget and guarantees a non-empty answer by falling back to a fixed set.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional, Protocol

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from config import get_settings
from errors import ExternalServiceError
from schemas import InsightRequest

logger = logging.getLogger(__name__)

MAX_INSIGHTS = 3

FALLBACK_INSIGHTS = (
    "You spent heavily in some categories. Consider optimizing.",
    "Set a clearer budget target for next month.",
    "Recurring expenses might be growing. Review them.",
)


class InsightGenerator(Protocol):
    def generate(self, request: InsightRequest) -> list[str]: ...


def build_prompt(request: InsightRequest) -> str:
    return (
        "Analyze this financial data and provide 3 concise, actionable insights.\n"
        f"Month: {request.month}\n"
        f"Income: {request.total_income:.2f}\n"
        f"Expenses: {request.total_expenses:.2f}\n"
        f"Net: {request.net:.2f}\n"
        f"Categories: {json.dumps(request.by_category, sort_keys=True)}\n"
        'Respond with ONLY a JSON array of strings, e.g. ["insight 1", "insight 2"].'
    )


def parse_insights(text: str) -> list[str]:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        payload = json.loads(cleaned.strip())
    except json.JSONDecodeError as exc:
        raise ExternalServiceError("Insight response is not valid JSON") from exc
    if not isinstance(payload, list):
        raise ExternalServiceError("Insight response is not a JSON array")
    insights = [str(item).strip() for item in payload if str(item).strip()]
    if not insights:
        raise ExternalServiceError("Insight response is empty")
    return insights[:MAX_INSIGHTS]


class GeminiInsightGenerator:
    def __init__(self, api_key: str, model_name: str = "gemini-1.5-flash") -> None:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(
            model_name=model_name,
            generation_config={"temperature": 0.2},
        )

    def generate(self, request: InsightRequest) -> list[str]:
        try:
            response = self._model.generate_content(build_prompt(request))
            text = response.text
        except Exception as exc:
            raise ExternalServiceError(f"Gemini request failed: {exc}") from exc
        return parse_insights(text)


class InsightService:
    def __init__(
        self,
        generator: Optional[InsightGenerator],
        *,
        max_attempts: Optional[int] = None,
        backoff_secs: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.generator = generator
        self.max_attempts = max_attempts or settings.insight_max_attempts
        self.backoff_secs = (
            settings.insight_backoff_secs if backoff_secs is None else backoff_secs
        )
        self._sleep = sleep

    def insights_for(self, request: InsightRequest) -> list[str]:
        if self.generator is None:
            return list(FALLBACK_INSIGHTS)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(
                start=self.backoff_secs, increment=self.backoff_secs
            ),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
        )
        try:
            insights = retrying(self._generate, request)
        except RetryError as exc:
            logger.warning(
                f"insights_fallback: month={request.month}"
                f" attempts={self.max_attempts} error={exc.last_attempt.exception()!r}"
            )
            return list(FALLBACK_INSIGHTS)
        return insights

    def _generate(self, request: InsightRequest) -> list[str]:
        insights = [text for text in self.generator.generate(request) if text]
        if not insights:
            raise ExternalServiceError("Insight generator returned nothing")
        return insights[:MAX_INSIGHTS]


def default_insight_generator() -> Optional[InsightGenerator]:
    settings = get_settings()
    if not settings.gemini_api_key:
        logger.warning("insights: no LEDGER_GEMINI_API_KEY set, using fallback insights")
        return None
    return GeminiInsightGenerator(settings.gemini_api_key, settings.gemini_model)
