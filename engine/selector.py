"""Random question selection honoring per-type quotas."""
from __future__ import annotations

import random
from typing import Dict, Iterable, List, Optional, Set

from .errors import InsufficientQuestionPool
from .interfaces import QuestionPool
from .types import (
    QUESTION_TYPES,
    Question,
    SelectionCriteria,
    SelectionPreview,
    SelectionResult,
    SessionKind,
)


class QuestionSelector:
    """Draw a session's question sequence from the eligible pool."""

    def __init__(self, pool: QuestionPool, rng: Optional[random.Random] = None) -> None:
        self._pool = pool
        self._rng = rng or random.Random()

    def _candidates(
        self,
        criteria: SelectionCriteria,
        qtype: str,
        exclude: List[str],
        kind: Optional[SessionKind],
    ) -> List[Question]:
        found = self._pool.get_eligible_questions(
            criteria.topic_ids, criteria.levels, qtype, exclude, usage=kind
        )
        topics = set(criteria.topic_ids)
        levels = set(criteria.levels)
        excluded = set(exclude)
        seen: Set[str] = set()
        result: List[Question] = []
        for question in found:
            if question.type != qtype or question.id in excluded or question.id in seen:
                continue
            if topics and question.topic_id not in topics:
                continue
            if levels and question.level not in levels:
                continue
            seen.add(question.id)
            result.append(question)
        # Stable base order so a seeded rng reproduces the same draw.
        result.sort(key=lambda q: q.id)
        return result

    def select(
        self,
        criteria: SelectionCriteria,
        *,
        kind: Optional[SessionKind] = None,
        exclude_ids: Iterable[str] = (),
    ) -> SelectionResult:
        """Draw ``count_<type>`` questions per type without replacement.

        A bucket with fewer eligible questions than requested contributes all of
        them and the gap is reported in ``shortfall``. Raises
        ``InsufficientQuestionPool`` when nothing at all can be drawn.
        """

        exclude = list(exclude_ids)
        requested: Dict[str, int] = {}
        selected: Dict[str, int] = {}
        shortfall: Dict[str, int] = {}
        question_ids: List[str] = []

        for qtype in QUESTION_TYPES:
            wanted = criteria.count_for(qtype)
            requested[qtype] = wanted
            if wanted == 0:
                selected[qtype] = 0
                continue
            pool = self._candidates(criteria, qtype, exclude, kind)
            take = min(wanted, len(pool))
            drawn = self._rng.sample(pool, take)
            question_ids.extend(question.id for question in drawn)
            selected[qtype] = take
            if take < wanted:
                shortfall[qtype] = wanted - take

        if not question_ids:
            raise InsufficientQuestionPool(
                "no eligible questions match the selection criteria",
                requested=requested,
                shortfall=shortfall or {qtype: count for qtype, count in requested.items() if count},
            )
        return SelectionResult(
            question_ids=question_ids,
            requested=requested,
            selected=selected,
            shortfall=shortfall,
        )

    def preview(
        self,
        criteria: SelectionCriteria,
        *,
        kind: Optional[SessionKind] = None,
        exclude_ids: Iterable[str] = (),
    ) -> SelectionPreview:
        """Count how many questions a draw would produce per type."""

        exclude = list(exclude_ids)
        available: Dict[str, int] = {}
        eligible: Dict[str, int] = {}
        for qtype in QUESTION_TYPES:
            wanted = criteria.count_for(qtype)
            found = len(self._candidates(criteria, qtype, exclude, kind)) if wanted else 0
            available[qtype] = found
            eligible[qtype] = min(wanted, found)
        return SelectionPreview(available=available, eligible=eligible, total=sum(eligible.values()))


__all__ = ["QuestionSelector"]
