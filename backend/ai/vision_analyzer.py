import asyncio
import json
import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from ai.schemas import AIAnalysisResponse
from utils.errors import AIAnalysisError, SchemaValidationError

logger = logging.getLogger(__name__)

MEAL_ANALYSIS_PROMPT = """You are a professional nutritionist analyzing food photos. Analyze this meal image and:

1. Identify all visible food items
2. Estimate portion sizes
3. Return complete macronutrient data: PROTEIN, CARBOHYDRATES, and FAT (all in grams)

CRITICAL: You MUST provide protein, carbs, and fat for every food item.
If you cannot estimate carbs or fat reliably, provide your best educated estimate.

Return ONLY valid JSON in this exact structure (no markdown, no extra text):
{
  "foods": [
    {
      "name": "specific food name",
      "portion": "estimated portion size (e.g., 150g, 1 cup)",
      "protein": number_in_grams,
      "carbs": number_in_grams,
      "fat": number_in_grams
    }
  ],
  "totalProtein": sum_of_all_protein,
  "totalCarbs": sum_of_all_carbs,
  "totalFat": sum_of_all_fat,
  "confidence": "high" or "medium" or "low",
  "notes": "optional observations"
}

Guidelines:
- Food names: specific (e.g., "Grilled Salmon Fillet" not just "Fish")
- Portions: realistic estimates (e.g., "200g salmon", "1 cup rice", "2 tbsp olive oil")
- Macros: protein, carbohydrates (including fiber), and fat in grams
- Confidence: high (clear, recognizable), medium (some items unclear), low (blurry, unidentifiable)
- If image has no food, return: {"foods": [], "totalProtein": 0, "totalCarbs": 0, "totalFat": 0, "confidence": "high", "notes": "No food visible"}"""


class VisionAnalyzer:
    """Azure OpenAI style chat-completions client for meal photos."""

    MAX_COMPLETION_TOKENS = 1000
    TEMPERATURE = 0.3

    def __init__(
        self,
        *,
        endpoint: str | None,
        api_key: str | None,
        deployment: str,
        api_version: str,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        timeout_seconds: float = 60,
        health_timeout_seconds: float = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.deployment = deployment
        self.api_version = api_version
        self.max_retries = max(int(max_retries), 1)
        self.retry_base_delay = float(retry_base_delay)
        self.timeout_seconds = timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "VisionAnalyzer":
        return cls(
            endpoint=settings.AI_ENDPOINT,
            api_key=settings.AI_API_KEY,
            deployment=settings.AI_DEPLOYMENT,
            api_version=settings.AI_API_VERSION,
            max_retries=settings.AI_MAX_RETRIES,
            retry_base_delay=settings.AI_RETRY_BASE_DELAY_SECONDS,
            timeout_seconds=settings.AI_TIMEOUT_SECONDS,
            health_timeout_seconds=settings.AI_HEALTH_TIMEOUT_SECONDS,
        )

    @property
    def model_name(self) -> str:
        return self.deployment

    @property
    def completions_url(self) -> str:
        return (
            f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions"
            f"?api-version={self.api_version}"
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "api-key": self.api_key or ""}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def build_payload(self, image_url: str) -> dict[str, Any]:
        return {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": MEAL_ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            "max_completion_tokens": self.MAX_COMPLETION_TOKENS,
            "temperature": self.TEMPERATURE,
            "response_format": {"type": "json_object"},
        }

    async def analyze_meal_image(self, image_url: str, request_id: str) -> AIAnalysisResponse:
        if not self.endpoint or not self.api_key:
            raise AIAnalysisError("AI endpoint is not configured")

        payload = self.build_payload(image_url)
        started = time.perf_counter()
        logger.info(f"AI analysis started request_id={request_id} model={self.deployment}")

        attempt = 1
        while True:
            try:
                result = await self._call_once(payload, request_id)
                duration_ms = (time.perf_counter() - started) * 1000.0
                logger.info(
                    f"AI analysis completed request_id={request_id} foods={len(result.foods)} "
                    f"total_protein={result.total_protein} confidence={result.confidence} "
                    f"duration_ms={duration_ms:.0f}"
                )
                return result
            except (AIAnalysisError, SchemaValidationError) as exc:
                if attempt >= self.max_retries:
                    logger.error(f"AI analysis failed after {attempt} attempts request_id={request_id}: {exc}")
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"AI analysis attempt {attempt} failed request_id={request_id}, retrying in {delay:.2f}s: {exc}"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _call_once(self, payload: dict, request_id: str) -> AIAnalysisResponse:
        try:
            async with self._client(self.timeout_seconds) as client:
                resp = await client.post(self.completions_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise AIAnalysisError(f"request failed: {exc}")

        if resp.status_code != 200:
            raise AIAnalysisError(f"API returned {resp.status_code}: {resp.text[:300]}")

        try:
            data = resp.json()
        except ValueError:
            raise AIAnalysisError("API returned a non-JSON body")

        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        if not content:
            raise AIAnalysisError("No response content from AI model")
        logger.debug(f"Raw AI response request_id={request_id}: {content[:500]}")

        return parse_analysis(content)

    async def check_health(self) -> dict:
        """Cheap reachability check. Never raises."""
        if not self.endpoint or not self.api_key:
            return {"status": "unconfigured"}
        started = time.perf_counter()
        ping = {
            "messages": [{"role": "user", "content": "ping"}],
            "max_completion_tokens": 1,
        }
        try:
            async with self._client(self.health_timeout_seconds) as client:
                resp = await client.post(self.completions_url, headers=self._headers(), json=ping)
        except httpx.HTTPError as exc:
            logger.warning(f"AI health check failed: {exc}")
            return {"status": "unhealthy", "error": type(exc).__name__}
        latency_ms = round((time.perf_counter() - started) * 1000.0)
        if resp.status_code >= 500:
            return {"status": "unhealthy", "http_status": resp.status_code, "latency_ms": latency_ms}
        return {"status": "healthy", "http_status": resp.status_code, "latency_ms": latency_ms}


def parse_analysis(content: str) -> AIAnalysisResponse:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        raise SchemaValidationError(f"AI returned invalid JSON: {content[:100]}")
    if not isinstance(parsed, dict):
        raise SchemaValidationError("AI response must be a JSON object")
    try:
        return AIAnalysisResponse.model_validate(parsed)
    except PydanticValidationError as exc:
        errors = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise SchemaValidationError(errors)


_ANALYZER: VisionAnalyzer | None = None


def get_vision_analyzer() -> VisionAnalyzer:
    global _ANALYZER
    if _ANALYZER is None:
        from config import settings

        _ANALYZER = VisionAnalyzer.from_settings(settings)
    return _ANALYZER
