import random
from datetime import date

import pytest

from maak.service.chat import ChatService, conversation_key
from maak.service.community import DAILY_QUESTIONS, CommunityService
from maak.service.errors import BadRequestError, ForbiddenError, NotFoundError
from maak.service.privacy import PrivacyService
from maak.service.profiles import ProfileService
from maak.storage.memory import MemoryKVStore


def _community(store=None):
    return CommunityService(
        store or MemoryKVStore(), today=lambda: date(2025, 6, 1), rng=random.Random(7)
    )


class TestCommunityService:
    async def test_question_is_shared_for_the_day(self):
        store = MemoryKVStore()
        community = _community(store)

        first = await community.get_daily_question("a")
        second = await community.get_daily_question("b")

        assert first["question"] == second["question"]
        assert first["question"]["date"] == "2025-06-01"
        assert first["question"]["question"] in {q["question"] for q in DAILY_QUESTIONS}
        assert first["userAnswer"] is None

    async def test_percentages_round_half_up(self):
        community = _community()
        await community.get_daily_question("a")

        await community.answer_daily_question("a", 0)
        await community.answer_daily_question("b", 0)
        await community.answer_daily_question("c", 1)
        result = await community.answer_daily_question("d", 2)

        assert result["results"] == [50, 25, 25, 0]

        await community.answer_daily_question("e", 3)
        await community.answer_daily_question("f", 3)
        await community.answer_daily_question("g", 3)
        result = await community.answer_daily_question("h", 3)
        assert result["results"] == [25, 13, 13, 50]

    async def test_errors(self):
        community = _community()

        with pytest.raises(NotFoundError):
            await community.answer_daily_question("a", 0)
        await community.get_daily_question("a")
        with pytest.raises(BadRequestError):
            await community.answer_daily_question("a", 9)
        await community.answer_daily_question("a", 0)
        with pytest.raises(BadRequestError, match="Already answered today"):
            await community.answer_daily_question("a", 1)


class TestChatService:
    def test_conversation_key_is_order_independent(self):
        assert conversation_key("b", "a") == conversation_key("a", "b") == "chat:a:b"

    async def test_messages_accumulate(self):
        chat = ChatService(MemoryKVStore())

        await chat.send_message("a", "b", "Hej")
        await chat.send_message("b", "a", "Hallå", "emoji")

        history = await chat.history("a", "b")
        assert [message["message"] for message in history] == ["Hej", "Hallå"]
        assert history[1]["type"] == "emoji"

    @pytest.mark.parametrize(("recipient", "message"), [("", "Hej"), ("b", "")])
    async def test_requires_recipient_and_message(self, recipient, message):
        with pytest.raises(BadRequestError):
            await ChatService(MemoryKVStore()).send_message("a", recipient, message)


class TestPrivacyService:
    async def test_consent_gates_analytics(self):
        store = MemoryKVStore()
        privacy = PrivacyService(store)

        with pytest.raises(ForbiddenError):
            await privacy.track_event("a", {"event": "opened"})
        assert await privacy.track_event("a", {"event": "crash", "critical": True})

        await privacy.update_consent("a", {"analytics": True})
        event_id = await privacy.track_event("a", {"event": "opened"})

        assert (await store.get(f"analytics:{event_id}"))["userId"] == "a"

    async def test_requests_are_filed_pending(self):
        store = MemoryKVStore()
        privacy = PrivacyService(store)

        request_id = await privacy.request_deletion("a", {"reason": "bye"})

        record = await store.get(f"deletion-request:{request_id}")
        assert record["status"] == "pending"
        assert record["reason"] == "bye"

    async def test_missing_consent(self):
        with pytest.raises(NotFoundError):
            await PrivacyService(MemoryKVStore()).get_consent("a")


class TestProfileService:
    async def test_matches_skip_users_without_personality(self):
        profiles = ProfileService(MemoryKVStore())
        await profiles.save_profile("a", {"firstName": "A", "interests": ["x"]})
        await profiles.save_personality("a", {"type": "INFP"})
        await profiles.save_profile("b", {"firstName": "B", "interests": ["x"]})
        await profiles.save_personality("b", {"type": "ENFJ"})
        await profiles.save_profile("c", {"firstName": "C"})

        matches = await profiles.find_matches("a")

        assert [match["id"] for match in matches] == ["b"]
        assert matches[0]["personalityMatch"] == 95
        assert matches[0]["bio"] == "Ny användare på MÄÄK"
        assert matches[0]["name"] == "B"

    async def test_match_limit(self):
        profiles = ProfileService(MemoryKVStore())
        for user_id in ["me"] + [f"u{i}" for i in range(12)]:
            await profiles.save_profile(user_id, {"firstName": user_id})
            await profiles.save_personality(user_id, {"type": "INTJ"})

        assert len(await profiles.find_matches("me")) == 10
        assert len(await profiles.find_matches("me", limit=3)) == 3
