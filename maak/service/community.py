from __future__ import annotations

import random
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from maak.logging import get_logger
from maak.service.compatibility import round_half_up
from maak.service.errors import BadRequestError, NotFoundError
from maak.storage.common import KVStore

logger = get_logger(__name__)

DAILY_QUESTIONS: List[Dict[str, Any]] = [
    {
        "question": "Vad är viktigast för dig i en relation?",
        "options": [
            "Ärlighet och kommunikation",
            "Gemensamma intressen",
            "Känslomässig intimitet",
            "Äventyr och spontanitet",
        ],
        "category": "relationships",
    },
    {
        "question": "Hur föredrar du att spendera en idealisk helg?",
        "options": [
            "Hemma med en god bok",
            "Utforska naturen",
            "Umgås med vänner",
            "Prova något nytt",
        ],
        "category": "lifestyle",
    },
    {
        "question": "Vad motiverar dig mest i livet?",
        "options": [
            "Att hjälpa andra",
            "Personlig utveckling",
            "Kreativ självuttryck",
            "Att uppnå mål",
        ],
        "category": "values",
    },
]


def _today() -> date:
    return datetime.now(timezone.utc).date()


class CommunityService:
    """One shared question per day with aggregated answers."""

    def __init__(
        self,
        store: KVStore,
        *,
        today: Callable[[], date] = _today,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.today = today
        self.rng = rng or random.Random()

    @staticmethod
    def _question_key(day: str) -> str:
        return f"daily-question:{day}"

    @staticmethod
    def _answer_key(day: str, user_id: str) -> str:
        return f"user-answer:{day}:{user_id}"

    async def get_daily_question(self, user_id: str) -> Dict[str, Any]:
        day = self.today().isoformat()
        question = await self.store.get(self._question_key(day))
        if not question:
            template = self.rng.choice(DAILY_QUESTIONS)
            option_count = len(template["options"])
            question = {
                **template,
                "date": day,
                "responses": 0,
                "results": [0] * option_count,
                "percentages": [0] * option_count,
            }
            await self.store.set(self._question_key(day), question)
            logger.info("daily_question_created", day=day, category=template["category"])

        answer = await self.store.get(self._answer_key(day, user_id))
        return {
            "question": question,
            "hasAnswered": answer is not None,
            "userAnswer": answer.get("answerIndex") if answer else None,
        }

    async def answer_daily_question(self, user_id: str, answer_index: Any) -> Dict[str, Any]:
        if isinstance(answer_index, bool) or not isinstance(answer_index, int):
            raise BadRequestError("Invalid answer index")
        day = self.today().isoformat()
        if await self.store.get(self._answer_key(day, user_id)):
            raise BadRequestError("Already answered today")

        question = await self.store.get(self._question_key(day))
        if not question:
            raise NotFoundError("No question for today")
        results = list(question.get("results") or [])
        if answer_index < 0 or answer_index >= len(results):
            raise BadRequestError("Invalid answer index")

        results[answer_index] += 1
        responses = int(question.get("responses") or 0) + 1
        percentages = [round_half_up(count / responses * 100) for count in results]
        question.update({"results": results, "responses": responses, "percentages": percentages})
        await self.store.set(self._question_key(day), question)
        await self.store.set(
            self._answer_key(day, user_id),
            {"answerIndex": answer_index, "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        return {"success": True, "results": percentages, "userAnswer": answer_index}


__all__ = ["CommunityService", "DAILY_QUESTIONS"]
