"""
Tests for AIProcessingEngine with faked SDK clients.

Covers categorization parsing, cost accounting, transient error mapping,
per-tenant models, vision over httpx and model drafting.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from config.settings import LLMConfig, TenantLLMConfig
from core.client_cache import TenantClientCache
from core.exceptions import TransientProcessingError
from models.schemas import (
    Attachment, DraftKind, MessageCategory, Sentiment,
)


def _anthropic_client(text="", input_tokens=1000, output_tokens=200, error=None):
    client = MagicMock()
    response = SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )
    client.messages.create = AsyncMock(return_value=response, side_effect=error)
    return client


def _engine(client, config=None, http_client=None):
    from core.engine import AIProcessingEngine
    return AIProcessingEngine(
        config=config or LLMConfig(),
        cache=TenantClientCache(lambda tenant_id: client),
        http_client=http_client,
    )


class RateLimitError(Exception):
    pass


class AuthenticationError(Exception):
    pass


class TestHelpers:
    def test_parse_fenced_json(self):
        from core.engine import parse_json_reply
        assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_reply('{"a": 2}') == {"a": 2}
        with pytest.raises(ValueError):
            parse_json_reply("[1, 2]")

    @pytest.mark.parametrize("raw,expected", [
        (0.5, 50.0), (85, 85.0), ("90", 90.0), (250, 100.0), (None, 0.0), ("high", 0.0),
    ])
    def test_confidence_normalised(self, raw, expected):
        from core.engine import _confidence
        assert _confidence(raw) == expected

    def test_transient_detection_walks_the_mro(self):
        from core.engine import _is_transient_sdk_error

        class CustomRateLimit(RateLimitError):
            pass

        assert _is_transient_sdk_error(CustomRateLimit())
        assert not _is_transient_sdk_error(AuthenticationError())


class TestCategorization:
    @pytest.mark.asyncio
    async def test_combined_call(self, make_message):
        reply = {
            "category": "customer",
            "confidence": 88,
            "sentiment": "POSITIVE",
            "reasoning": "Traveller asking for a quote",
            "extracted_data": {"destination": "Paris", "travelers": {"adults": 2}},
        }
        client = _anthropic_client(json.dumps(reply))
        result = await _engine(client).categorize_and_extract(make_message(), "acme")

        assert result.category == MessageCategory.CUSTOMER
        assert result.confidence == 88.0
        assert result.sentiment == Sentiment.POSITIVE
        assert result.extracted_data.destination == "Paris"
        assert result.extracted_data.travelers.adults == 2
        assert result.tokens == 1200
        assert result.cost == pytest.approx(0.006)

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["temperature"] == 0.1
        assert "Subject: Paris in June" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_unknown_labels_fall_back(self, make_message):
        client = _anthropic_client(json.dumps({"category": "NEWSLETTER", "confidence": 40, "sentiment": "?"}))
        result = await _engine(client).categorize_and_extract(make_message(), "acme")
        assert result.category == MessageCategory.OTHER
        assert result.sentiment == Sentiment.NEUTRAL
        assert result.extracted_data is None

    @pytest.mark.asyncio
    async def test_invalid_extraction_is_flagged(self, make_message):
        client = _anthropic_client(json.dumps({
            "category": "CUSTOMER", "confidence": 90,
            "extracted_data": {"travelers": {"adults": "a few"}},
        }))
        result = await _engine(client).categorize_and_extract(make_message(), "acme")
        assert result.extracted_data.missing_info == ["unparseable extraction"]

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_transient(self, make_message):
        client = _anthropic_client("I think this is a customer email.")
        with pytest.raises(TransientProcessingError):
            await _engine(client).categorize_and_extract(make_message(), "acme")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, make_message):
        client = _anthropic_client(error=RateLimitError("slow down"))
        with pytest.raises(TransientProcessingError, match="RateLimitError"):
            await _engine(client).categorize_and_extract(make_message(), "acme")

    @pytest.mark.asyncio
    async def test_other_sdk_errors_propagate(self, make_message):
        client = _anthropic_client(error=AuthenticationError("bad key"))
        with pytest.raises(AuthenticationError):
            await _engine(client).categorize_and_extract(make_message(), "acme")

    @pytest.mark.asyncio
    async def test_tenant_model_override(self, make_message):
        client = _anthropic_client(json.dumps({"category": "SPAM", "confidence": 99}))
        config = LLMConfig(tenants={"acme": TenantLLMConfig(model="claude-tenant-model")})
        await _engine(client, config).categorize_and_extract(make_message(), "acme")
        assert client.messages.create.await_args.kwargs["model"] == "claude-tenant-model"

    @pytest.mark.asyncio
    async def test_openai_provider(self, make_message):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"category": "FINANCE", "confidence": 77}'))],
            usage=SimpleNamespace(prompt_tokens=500, completion_tokens=100),
        ))
        result = await _engine(client, LLMConfig(provider="openai", model="gpt-4o")) \
            .categorize_and_extract(make_message(), "acme")

        assert result.category == MessageCategory.FINANCE
        assert result.tokens == 600
        messages = client.chat.completions.create.await_args.kwargs["messages"]
        assert messages[0]["role"] == "system"


class TestVision:
    @pytest.mark.asyncio
    async def test_contacts_from_image(self, make_message):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=b"\x89PNG")))
        client = _anthropic_client(json.dumps({"contacts": [{"name": "Claire Martin", "phone": "+33 1 23 45"}]}))
        message = make_message(attachments=[
            Attachment(filename="card.png", content_type="image/png", url="https://files.example.com/card.png"),
        ])

        result = await _engine(client, http_client=http).extract_contacts_from_images(message, "acme")
        await http.aclose()

        assert result.success
        assert result.contacts[0].phone == "+33 1 23 45"
        blocks = client.messages.create.await_args.kwargs["messages"][0]["content"]
        assert blocks[0]["type"] == "image"
        assert blocks[0]["source"]["media_type"] == "image/png"

    @pytest.mark.asyncio
    async def test_no_images(self, make_message):
        client = _anthropic_client()
        result = await _engine(client).extract_contacts_from_images(make_message(), "acme")
        assert not result.success
        client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_failure_is_not_fatal(self, make_message):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        client = _anthropic_client()
        message = make_message(attachments=[
            Attachment(filename="card.jpg", content_type="image/jpeg", url="https://files.example.com/gone.jpg"),
        ])

        result = await _engine(client, http_client=http).extract_contacts_from_images(message, "acme")
        await http.aclose()

        assert not result.success
        assert "404" in result.error
        client.messages.create.assert_not_awaited()


class TestModelDrafting:
    @pytest.mark.asyncio
    async def test_json_draft(self, make_message):
        client = _anthropic_client(json.dumps({
            "subject": "Your Paris trip", "body": "Hi Claire\n\nWe found two options.",
        }))
        draft = await _engine(client).draft_response(DraftKind.PACKAGE_FOUND, {"message": make_message()})

        assert draft.subject == "Your Paris trip"
        assert draft.body == "<p>Hi Claire</p><p>We found two options.</p>"
        assert draft.plain_text == "Hi Claire\n\nWe found two options."
        assert draft.cost == pytest.approx(0.006)

    @pytest.mark.asyncio
    async def test_plain_text_reply_is_used(self, make_message):
        client = _anthropic_client("Thanks for writing, we will be in touch.")
        draft = await _engine(client).draft_response(DraftKind.PACKAGE_NOT_FOUND, {"message": make_message()})
        assert draft.subject == "Re: Paris in June"
        assert draft.plain_text == "Thanks for writing, we will be in touch."

    @pytest.mark.asyncio
    async def test_empty_reply_is_transient(self, make_message):
        client = _anthropic_client("")
        with pytest.raises(TransientProcessingError):
            await _engine(client).draft_response(DraftKind.PACKAGE_NOT_FOUND, {"message": make_message()})
