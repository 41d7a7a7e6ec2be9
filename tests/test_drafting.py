"""Tests for TemplateResponseDrafter — fixed templates and model delegation."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import good_decision, paris_request
from core.drafting import CUSTOMISE_NOTE, TemplateResponseDrafter, _reply_subject
from models.schemas import (
    DraftKind, DraftedResponse, FieldValidation, MatchCandidate, MissingField,
    ScoreBreakdown, SourceType, WorkflowAction,
)


class TestReplySubject:
    @pytest.mark.parametrize("subject,expected", [
        ("Paris in June", "Re: Paris in June"),
        ("RE: Paris in June", "RE: Paris in June"),
        ("  ", "Your travel enquiry"),
    ])
    def test_reply_subject(self, subject, expected):
        assert _reply_subject(subject) == expected


class TestTemplates:
    @pytest.mark.asyncio
    async def test_ask_for_info_lists_questions(self, make_message):
        validation = FieldValidation(is_valid=False, missing_fields=[
            MissingField(field="dates", label="Travel dates", question="When would you like to travel?"),
        ])
        draft = await TemplateResponseDrafter().draft_response(DraftKind.ASK_FOR_INFO, {
            "message": make_message(),
            "extracted": paris_request(),
            "validation": validation,
        })

        assert draft.subject == "Re: Paris in June"
        assert draft.cost == 0.0
        assert draft.plain_text.startswith("Dear Claire Martin,")
        assert "travelling to Paris" in draft.plain_text
        assert "• When would you like to travel?" in draft.plain_text
        assert draft.plain_text.endswith("The Travel Desk")

    @pytest.mark.asyncio
    async def test_ask_for_info_falls_back_to_missing_info(self, make_message):
        draft = await TemplateResponseDrafter().draft_response(DraftKind.ASK_FOR_INFO, {
            "message": make_message(),
            "extracted": paris_request(destination=None, missing_info=["budget"]),
        })
        assert "Thank you for getting in touch with us." in draft.plain_text
        assert "• Could you tell us your budget?" in draft.plain_text

    @pytest.mark.asyncio
    async def test_itinerary_matches_with_note(self, make_message):
        workflow = good_decision().workflow
        workflow.action = WorkflowAction.SEND_ITINERARIES_WITH_NOTE
        draft = await TemplateResponseDrafter(signature="Acme Travel").draft_response(
            DraftKind.ITINERARY_MATCHES_WITH_NOTE,
            {"message": make_message(), "extracted": paris_request(), "workflow": workflow},
        )

        assert "• Paris in Spring (Paris, France), from 4,900" in draft.plain_text
        assert CUSTOMISE_NOTE in draft.plain_text
        assert draft.plain_text.endswith("Acme Travel")

    @pytest.mark.asyncio
    async def test_plain_matches_have_no_note(self, make_message):
        draft = await TemplateResponseDrafter().draft_response(
            DraftKind.ITINERARY_MATCHES,
            {"message": make_message(), "workflow": good_decision().workflow},
        )
        assert CUSTOMISE_NOTE not in draft.plain_text

    @pytest.mark.asyncio
    async def test_custom_request_mentions_optional_fields(self, make_message):
        validation = FieldValidation(is_valid=True, optional_fields=[
            MissingField(field="hotel_rating", label="Hotel rating",
                         question="Do you have a preferred hotel category?", priority="optional"),
        ])
        draft = await TemplateResponseDrafter().draft_response(
            DraftKind.CUSTOM_REQUEST, {"message": make_message(), "validation": validation},
        )
        assert "custom itinerary" in draft.plain_text
        assert "• Do you have a preferred hotel category?" in draft.plain_text

    @pytest.mark.asyncio
    async def test_html_is_escaped(self, make_message):
        draft = await TemplateResponseDrafter().draft_response(
            DraftKind.CUSTOM_REQUEST, {"message": make_message(from_name="O'Brien & <Co>")},
        )
        assert draft.plain_text.startswith("Dear O'Brien & <Co>,")
        assert "<p>Dear O&#x27;Brien &amp; &lt;Co&gt;,</p>" in draft.body


class TestPackageDrafts:
    def _candidate(self):
        return MatchCandidate(
            candidate_id="offer-paris", source_type=SourceType.SUPPLIER_OFFER,
            title="Paris Romance Week", destination="Paris, France", price=4900,
            score=ScoreBreakdown(destination=38, dates=25, budget=18, travelers=10),
        )

    @pytest.mark.asyncio
    async def test_fallback_without_model(self, make_message):
        drafter = TemplateResponseDrafter()
        found = await drafter.draft_response(
            DraftKind.PACKAGE_FOUND, {"message": make_message(), "matches": [self._candidate()]},
        )
        assert "• Paris Romance Week (Paris, France), USD 4,900" in found.plain_text

        not_found = await drafter.draft_response(DraftKind.PACKAGE_NOT_FOUND, {"message": make_message()})
        assert "tailored proposal" in not_found.plain_text

    @pytest.mark.asyncio
    async def test_model_drafter_used_for_packages_only(self, make_message):
        model = MagicMock()
        model.draft_response = AsyncMock(return_value=DraftedResponse(
            kind=DraftKind.PACKAGE_FOUND, subject="Your Paris options", body="<p>Hi</p>", cost=0.01,
        ))
        drafter = TemplateResponseDrafter(model_drafter=model)
        context = {"message": make_message(), "matches": [self._candidate()]}

        draft = await drafter.draft_response(DraftKind.PACKAGE_FOUND, context)
        assert draft.subject == "Your Paris options"
        model.draft_response.assert_awaited_once_with(DraftKind.PACKAGE_FOUND, context)

        await drafter.draft_response(DraftKind.CUSTOM_REQUEST, {"message": make_message()})
        assert model.draft_response.await_count == 1
