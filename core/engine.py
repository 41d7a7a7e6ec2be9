"""
AI Processing Engine — model-backed categorization, vision and drafting.

One engine serves every tenant. Per-tenant SDK clients come from an injected
TenantClientCache (a tenant may bring its own API key and model). Handles:
- Combined categorize + extract call (one request per message)
- Contact extraction from image attachments (fetched with httpx)
- Free-form reply drafting when no templated path applies

Cost is derived from the token usage the provider reports.
"""
from __future__ import annotations

import base64
import json
import structlog
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import LLMConfig, get_settings
from core.client_cache import TenantClientCache
from core.collaborators import MessageAnalyzer, ResponseDrafter, VisionExtractor
from core.exceptions import PermanentProcessingError, TransientProcessingError
from models.schemas import (
    CategorizationResult, ContactDetails, DraftKind, DraftedResponse, ExtractedData,
    InboundMessage, MessageCategory, Sentiment, VisionResult,
)

logger = structlog.get_logger()

# SDK error classes (same names in anthropic and openai) worth a retry
_TRANSIENT_SDK_ERRORS = {"APIConnectionError", "APITimeoutError", "RateLimitError", "InternalServerError"}

MAX_IMAGES = 3


@dataclass
class LLMReply:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _is_transient_sdk_error(error: Exception) -> bool:
    return any(cls.__name__ in _TRANSIENT_SDK_ERRORS for cls in type(error).__mro__)


def parse_json_reply(text: str) -> dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating ``` fences."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.split("```")[1].strip()
        if text.startswith("json"):
            text = text[4:].strip()
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


class AIProcessingEngine(MessageAnalyzer, VisionExtractor, ResponseDrafter):
    """
    Calls Claude or OpenAI (settings.llm.provider) with per-tenant clients.
    Connection, timeout, rate-limit and 5xx errors become TransientProcessingError.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        cache: Optional[TenantClientCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_settings().llm
        self._cache = cache or TenantClientCache(
            self._create_client,
            ttl_s=self._config.client_cache_ttl_s,
            max_size=self._config.client_cache_max_size,
        )
        self._http = http_client

    @property
    def is_openai(self) -> bool:
        return self._config.provider == "openai"

    def _create_client(self, tenant_id: str):
        tenant = self._config.tenants.get(tenant_id)
        api_key = (tenant.api_key if tenant else "") or self._config.api_key
        if self.is_openai:
            from openai import AsyncOpenAI
            client = AsyncOpenAI(api_key=api_key)
        else:
            import anthropic
            client = anthropic.AsyncAnthropic(api_key=api_key)
        logger.info("llm_client_initialized",
                    provider=self._config.provider,
                    tenant_id=tenant_id,
                    tenant_key=bool(tenant and tenant.api_key))
        return client

    def _model_for(self, tenant_id: str, vision: bool = False) -> str:
        tenant = self._config.tenants.get(tenant_id)
        if tenant and tenant.model:
            return tenant.model
        if vision and self._config.vision_model:
            return self._config.vision_model
        return self._config.model

    def _cost(self, input_tokens: int, output_tokens: int) -> float:
        return round(
            input_tokens * self._config.input_cost_per_mtok / 1_000_000
            + output_tokens * self._config.output_cost_per_mtok / 1_000_000,
            6,
        )

    async def _call_llm(
        self,
        tenant_id: str,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int = None,
        temperature: float = None,
        vision: bool = False,
    ) -> LLMReply:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = self._cache.get(tenant_id)
        model = self._model_for(tenant_id, vision=vision)
        max_tokens = max_tokens or self._config.max_tokens
        temperature = temperature if temperature is not None else self._config.temperature

        try:
            if self.is_openai:
                oai_messages = [{"role": "system", "content": system}] + messages
                response = await client.chat.completions.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=oai_messages,
                )
                text = response.choices[0].message.content or ""
                usage = response.usage
                input_tokens = getattr(usage, "prompt_tokens", 0) or 0
                output_tokens = getattr(usage, "completion_tokens", 0) or 0
            else:
                response = await client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=messages,
                )
                text = response.content[0].text if response.content else ""
                usage = response.usage
                input_tokens = getattr(usage, "input_tokens", 0) or 0
                output_tokens = getattr(usage, "output_tokens", 0) or 0
        except Exception as e:
            if _is_transient_sdk_error(e):
                logger.warning("llm_call_transient_error", tenant_id=tenant_id,
                               error_type=type(e).__name__, error=str(e))
                raise TransientProcessingError(f"{type(e).__name__}: {e}") from e
            raise

        return LLMReply(text, input_tokens, output_tokens, self._cost(input_tokens, output_tokens))

    # ── Categorization + extraction ───────────────────────────

    async def categorize_and_extract(self, message: InboundMessage, tenant_id: str) -> CategorizationResult:
        reply = await self._call_llm(
            tenant_id,
            system=_CATEGORIZE_PROMPT.replace("{{today}}", date.today().isoformat()),
            messages=[{"role": "user", "content": (
                f"From: {message.from_name} <{message.from_address}>\n"
                f"Subject: {message.subject}\n\n"
                f"{message.body_text or message.body_html}"
            )}],
            temperature=0.1,
        )
        try:
            data = parse_json_reply(reply.text)
        except ValueError as e:
            raise TransientProcessingError(f"unparseable categorization reply: {e}") from e

        result = CategorizationResult(
            category=_category(data.get("category")),
            confidence=_confidence(data.get("confidence")),
            sentiment=_sentiment(data.get("sentiment")),
            extracted_data=self._extracted(data.get("extracted_data"), message.id),
            reasoning=str(data.get("reasoning", "")),
            cost=reply.cost,
            tokens=reply.tokens,
        )
        logger.info("message_categorized",
                    message_id=message.id,
                    tenant_id=tenant_id,
                    category=result.category.value,
                    confidence=result.confidence,
                    tokens=reply.tokens,
                    cost=reply.cost)
        return result

    @staticmethod
    def _extracted(raw: Any, message_id: str) -> Optional[ExtractedData]:
        if not raw:
            return None
        try:
            return ExtractedData.model_validate(raw)
        except ValidationError as e:
            logger.warning("extraction_invalid", message_id=message_id, errors=e.error_count())
            return ExtractedData(missing_info=["unparseable extraction"])

    # ── Vision ────────────────────────────────────────────────

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        return self._http

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch_attachment(self, url: str) -> bytes:
        client = await self._get_http()
        response = await client.get(url)
        response.raise_for_status()
        return response.content

    def _image_block(self, content_type: str, data: bytes) -> dict[str, Any]:
        encoded = base64.b64encode(data).decode("ascii")
        if self.is_openai:
            return {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{encoded}"}}
        return {"type": "image", "source": {"type": "base64", "media_type": content_type, "data": encoded}}

    async def extract_contacts_from_images(self, message: InboundMessage, tenant_id: str) -> VisionResult:
        """Best effort: any failure returns success=False and the pipeline carries on."""
        images = [a for a in message.image_attachments if a.url][:MAX_IMAGES]
        if not images:
            return VisionResult(success=False, error="no retrievable images")

        try:
            blocks = []
            for attachment in images:
                blocks.append(self._image_block(attachment.content_type, await self._fetch_attachment(attachment.url)))
            blocks.append({"type": "text", "text": "Extract every contact detail visible in these images."})

            reply = await self._call_llm(
                tenant_id,
                system=_VISION_PROMPT,
                messages=[{"role": "user", "content": blocks}],
                max_tokens=1024,
                temperature=0.0,
                vision=True,
            )
            data = parse_json_reply(reply.text)
            contacts = [ContactDetails.model_validate(c) for c in data.get("contacts", []) if isinstance(c, dict)]
        except (httpx.HTTPError, TransientProcessingError, ValueError, ValidationError) as e:
            logger.warning("vision_extraction_failed",
                           message_id=message.id, tenant_id=tenant_id, error=str(e))
            return VisionResult(success=False, error=str(e))

        logger.info("vision_extraction_completed",
                    message_id=message.id, images=len(images), contacts=len(contacts), cost=reply.cost)
        return VisionResult(success=True, contacts=contacts, cost=reply.cost, tokens=reply.tokens)

    # ── Model drafting ────────────────────────────────────────

    async def draft_response(self, kind: DraftKind, context: dict[str, Any]) -> DraftedResponse:
        """Free-form reply for package_found / package_not_found."""
        message: InboundMessage = context["message"]
        matches = context.get("matches") or []
        extracted: Optional[ExtractedData] = context.get("extracted")

        brief = {
            "situation": kind.value,
            "customer_name": (extracted.contact.name if extracted else None) or message.from_name,
            "request": extracted.model_dump(mode="json", exclude={"supplier_packages"}) if extracted else {},
            "packages": [
                {"title": m.title, "destination": m.destination, "price": m.price,
                 "score": m.total, "why": m.reasons, "gaps": m.gaps}
                for m in matches[:3]
            ],
        }
        reply = await self._call_llm(
            message.tenant_id,
            system=_DRAFT_PROMPT,
            messages=[{"role": "user", "content": (
                f"Original subject: {message.subject}\n\n"
                f"Customer wrote:\n{message.body_text[:4000]}\n\n"
                f"Brief:\n{json.dumps(brief, indent=2)}"
            )}],
        )
        try:
            data = parse_json_reply(reply.text)
            subject = str(data.get("subject") or f"Re: {message.subject}")
            body = str(data.get("body") or "")
        except ValueError:
            # plain-text reply is still a usable draft
            subject, body = f"Re: {message.subject}", reply.text

        if not body.strip():
            raise TransientProcessingError("empty draft reply")

        return DraftedResponse(
            kind=kind,
            subject=subject,
            body=body if body.lstrip().startswith("<") else _paragraphs(body),
            plain_text=body,
            cost=reply.cost,
            tokens=reply.tokens,
        )


def _category(value: Any) -> MessageCategory:
    try:
        return MessageCategory(str(value or "OTHER").upper())
    except ValueError:
        return MessageCategory.OTHER


def _sentiment(value: Any) -> Sentiment:
    try:
        return Sentiment(str(value or "neutral").lower())
    except ValueError:
        return Sentiment.NEUTRAL


def _confidence(value: Any) -> float:
    """Models answer on 0-1 or 0-100; normalise to 0-100."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence <= 1.0:
        confidence *= 100
    return max(0.0, min(100.0, confidence))


def _paragraphs(text: str) -> str:
    parts = [p.strip().replace("\n", "<br>") for p in text.split("\n\n") if p.strip()]
    return "".join(f"<p>{p}</p>" for p in parts)


# ── Prompts ──────────────────────────────────────────────────

_CATEGORIZE_PROMPT = """You triage the inbox of a travel agency. Today is {{today}}.
Classify the email and extract the travel request in ONE pass.

Return a JSON object with:
- category: CUSTOMER | SUPPLIER | AGENT | FINANCE | OTHER | SPAM
- confidence: 0-100
- sentiment: positive | neutral | negative | urgent
- reasoning: one sentence
- extracted_data: null for SPAM, otherwise an object with
    destination, additional_destinations[], dates {start, end, flexible} (ISO dates),
    duration_days, travelers {adults, children, infants},
    budget {amount, currency, per_person}, package_type, meal_plan, hotel_type,
    hotel_rating, activities[], special_requests[], missing_info[],
    contact {name, email, phone, company, website, address},
    supplier_packages[] (SUPPLIER only: title, destination, country, price, currency,
    duration_days, valid_from, valid_until, min_pax, max_pax, package_type,
    meal_plan, hotel_rating, highlights[], activities[])

CATEGORY GUIDE:
  CUSTOMER  a traveller (or their assistant) asking about trips, quotes or bookings
  SUPPLIER  a hotel, DMC or operator offering packages or rates
  AGENT     another travel agent or internal staff
  FINANCE   invoices, payments, refunds, bank notices
  SPAM      marketing, phishing, unrelated bulk mail
  OTHER     anything else

List in missing_info every detail a travel agent would still need to quote.
Use null for unknown values. Return ONLY valid JSON, no other text."""

_VISION_PROMPT = """You read business cards, email signatures and letterheads in images.
Return a JSON object {"contacts": [{name, email, phone, company, website, address}]}.
Use null for anything not visible. Return ONLY valid JSON, no other text."""

_DRAFT_PROMPT = """You write email replies for a travel agency.
Be warm, specific and brief. Mention concrete packages when the brief lists any,
including price and why each fits; otherwise explain that the team will prepare
a tailored proposal and ask for anything still missing.
Never invent packages, prices or availability that are not in the brief.

Return a JSON object {"subject": "...", "body": "..."} where body is plain text
with blank lines between paragraphs. Return ONLY valid JSON, no other text."""
