"""LLM distillation of collected documentation into structured porting data."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, ValidationError

from ...core.config import settings
from ...models.sources import SourceRecord, SourceType, TokenUsage

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 100_000

SYSTEM_PROMPT = (
    "You are an expert Minecraft mod developer. You extract porting information "
    "from documentation and reply with JSON only."
)

DISTILLATION_PROMPT = """Extract every change relevant to porting a mod from the content below.

Source: {title}
URL: {url}
Source type: {source_type}
Mod loader: {loader_type}
Minecraft version: {minecraft_version}
{extra_instructions}
Respond with a single JSON object of this shape:
{{
  "minecraft_version": "x.y.z or null",
  "breaking_changes": [{{"id": "...", "title": "...", "description": "...", "severity": "high|medium|low", "affected_apis": []}}],
  "api_updates": [{{"id": "...", "title": "...", "description": "...", "type": "new_api|enhancement|performance", "affected_apis": []}}],
  "migration_guides": [{{"id": "...", "title": "...", "description": "...", "steps": []}}],
  "dependency_updates": [{{"name": "...", "from_version": "...", "to_version": "..."}}],
  "summary": "Comprehensive summary covering all major changes",
  "confidence_score": 0.0
}}

Content:
{content}
"""


class DistillationError(Exception):
    """Distillation of one source failed."""

    def __init__(
        self, message: str, code: str = "distillation_error", http_status: Optional[int] = None
    ):
        self.code = code
        self.http_status = http_status
        super().__init__(message)


class DistilledContent(BaseModel):
    """Structured output expected from the model."""

    minecraft_version: Optional[str] = None
    breaking_changes: List[Dict[str, Any]] = Field(default_factory=list)
    api_updates: List[Dict[str, Any]] = Field(default_factory=list)
    migration_guides: List[Dict[str, Any]] = Field(default_factory=list)
    dependency_updates: List[Dict[str, Any]] = Field(default_factory=list)
    summary: str = ""
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def item_count(self) -> int:
        return (
            len(self.breaking_changes)
            + len(self.api_updates)
            + len(self.migration_guides)
            + len(self.dependency_updates)
        )


@dataclass
class DistillationOutput:
    content: DistilledContent
    model: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    confidence_score: Optional[float] = None
    validation_passed: bool = True

    def to_document(self, record: SourceRecord) -> Dict[str, Any]:
        """Serializable form written to the distilled content directory."""
        document = self.content.model_dump(mode="json")
        document["metadata"] = {
            "url": record.url,
            "title": record.title,
            "source_type": record.source_type.value,
            "loader_type": record.loader_type.value if record.loader_type else None,
            "minecraft_version": self.content.minecraft_version or record.minecraft_version,
            "model": self.model,
            "token_usage": self.token_usage.model_dump(),
        }
        return document


def extract_text(content: str) -> str:
    """Strip HTML down to readable text; other content is returned as-is."""
    if not re.search(r"<(html|body|div|p|article|main)\b", content, re.IGNORECASE):
        return content.strip()

    soup = BeautifulSoup(content, "html.parser")
    for element in soup(["script", "style", "nav", "header", "footer"]):
        element.decompose()

    for selector in ["main", "article", ".content", "#content", ".markdown-body"]:
        content_elem = soup.select_one(selector)
        if content_elem:
            text = content_elem.get_text(separator="\n", strip=True)
            if text:
                return re.sub(r"\n{3,}", "\n\n", text)

    return re.sub(r"\n{3,}", "\n\n", soup.get_text(separator="\n", strip=True))


def parse_json_reply(reply: str) -> Dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating markdown code fences."""
    text = reply.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DistillationError(f"Model reply is not valid JSON: {e}", code="invalid_json") from e
    if not isinstance(data, dict):
        raise DistillationError("Model reply is not a JSON object", code="invalid_json")
    return data


class OpenAIDistiller:
    """Distills one source per call through the OpenAI chat completions API."""

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self._client = client
        self.model = model or settings.openai_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.llm_max_tokens

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if settings.openai_api_key is None:
                raise DistillationError(
                    "OPENAI_API_KEY is not configured", code="configuration_error"
                )
            self._client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key.get_secret_value(),
                base_url=settings.openai_base_url,
            )
        return self._client

    def build_prompt(self, record: SourceRecord, text: str) -> str:
        hints = record.processing_hints
        extra = []
        if hints and hints.custom_prompt:
            extra.append(hints.custom_prompt)
        if hints and hints.expected_categories:
            extra.append(f"Expected categories: {', '.join(hints.expected_categories)}")
        if record.source_type == SourceType.CHANGELOG:
            extra.append("This is a changelog; treat every entry as a potential change.")

        return DISTILLATION_PROMPT.format(
            title=record.title or record.url,
            url=record.url,
            source_type=record.source_type.value,
            loader_type=record.loader_type.value if record.loader_type else "unknown",
            minecraft_version=record.minecraft_version or "extract from content",
            extra_instructions="\n".join(extra) + ("\n" if extra else ""),
            content=text[:MAX_INPUT_CHARS],
        )

    async def distill(self, record: SourceRecord, content: str) -> DistillationOutput:
        text = extract_text(content)
        if not text:
            raise DistillationError(f"No text to distill for {record.url}", code="empty_content")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_prompt(record, text)},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as e:
            raise DistillationError(f"Model request timed out: {e}", code="timeout") from e
        except openai.APIConnectionError as e:
            raise DistillationError(f"Could not reach model: {e}", code="network_error") from e
        except openai.RateLimitError as e:
            raise DistillationError(
                f"Rate limited by model provider: {e}", code="rate_limited", http_status=429
            ) from e
        except openai.APIStatusError as e:
            raise DistillationError(
                f"Model request failed: {e}", code="api_error", http_status=e.status_code
            ) from e

        reply = response.choices[0].message.content or ""
        data = parse_json_reply(reply)

        try:
            distilled = DistilledContent.model_validate(data)
        except ValidationError as e:
            raise DistillationError(
                f"Model reply failed validation: {e}", code="validation_failed"
            ) from e

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        logger.debug(
            f"Distilled {record.url}: {distilled.item_count} items, {usage.total_tokens} tokens"
        )
        return DistillationOutput(
            content=distilled,
            model=self.model,
            token_usage=usage,
            confidence_score=distilled.confidence_score,
            validation_passed=True,
        )
