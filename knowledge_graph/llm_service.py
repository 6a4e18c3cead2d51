"""
Language-Model Service

Calls the internal AI microservice over HTTP and parses structured replies
strictly: output either validates against a pydantic schema (Parsed) or is
returned as raw text (Unparsed). There is no silent fallback to an empty
result.
"""

import json
import logging
import time
from typing import Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ValidationError as SchemaError

from exceptions import ExternalServiceError
from knowledge_graph.models import LLMResponse, Parsed, Unparsed, ParseResult

logger = logging.getLogger(__name__)


def _clean_json_response(response: str) -> str:
    """Clean JSON markers from AI response"""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:].strip()
    if response.startswith("```"):
        response = response[3:].strip()
    if response.endswith("```"):
        response = response[:-3].strip()
    return response


def parse_structured(raw: str, schema: Type[BaseModel]) -> ParseResult:
    """Validate model output against ``schema``"""
    cleaned = _clean_json_response(raw or "")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return Unparsed(raw_text=raw or "", error=f"invalid JSON: {e}")
    try:
        return Parsed(value=schema.model_validate(data))
    except SchemaError as e:
        return Unparsed(raw_text=raw or "", error=f"schema mismatch: {e.error_count()} error(s)")


class LLMService:
    """Client for the AI microservice (``POST {base_url}/ai/{route}``)"""

    def __init__(self, base_url: str, api_key: Optional[str], route: str = "gemini", timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.route = route
        self.timeout = timeout

    async def generate(self, prompt: str) -> LLMResponse:
        """
        Send one prompt and return the model's text.

        Raises:
            ExternalServiceError: transport error, timeout or non-2xx status
        """
        payload = {"prompt": {"text": prompt, "images": []}}
        headers = {"X-API-KEY": self.api_key or "", "Content-Type": "application/json"}
        started = time.perf_counter()

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    f"{self.base_url}/ai/{self.route}",
                    json=payload,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                body = response.json()
            except httpx.TimeoutException as e:
                raise ExternalServiceError(f"LLM request timed out after {self.timeout}s") from e
            except (httpx.HTTPError, ValueError) as e:
                raise ExternalServiceError(f"LLM request failed: {e}") from e

        usage = body.get("usage") or {}
        tokens = usage.get("total_tokens") or (usage.get("input_tokens", 0) + usage.get("output_tokens", 0))
        duration_ms = (time.perf_counter() - started) * 1000
        result = LLMResponse(
            content=body.get("message", "") or "",
            model=body.get("model", self.route),
            tokens_used=int(tokens or 0),
            duration_ms=duration_ms,
        )
        logger.info(f"LLM call via {self.route}: {result.tokens_used} tokens, {duration_ms:.0f}ms")
        return result

    async def generate_structured(self, prompt: str, schema: Type[BaseModel]) -> Tuple[ParseResult, LLMResponse]:
        response = await self.generate(prompt)
        return parse_structured(response.content, schema), response
