"""Answer normalization and scoring for choice and written questions."""
from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from config.matching import MatchingConfig, matching_config

from .types import AnswerPayload, Question, SessionRules

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


class AnswerEvaluation(BaseModel):
    is_correct: bool
    score: float
    match_percent: Optional[float] = None


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    kept = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return unicodedata.normalize("NFC", kept)


def normalize(text: Optional[str]) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""

    if not text or not text.strip():
        return ""
    sample = _strip_accents(text.lower())
    sample = _NON_WORD.sub(" ", sample)
    sample = _SPACES.sub(" ", sample)
    return sample.strip()


def _stem(token: str) -> str:
    # Fold the common English plural forms so "closures" meets "closure".
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def _tokens(normalized: str) -> List[str]:
    return [token for token in normalized.split(" ") if token]


def _keywords(tokens: Iterable[str], cfg: MatchingConfig) -> Set[str]:
    return {
        _stem(token)
        for token in tokens
        if len(token) >= cfg.min_token_length and token not in cfg.stop_words
    }


def _token_matches(official: str, candidates: Set[str], cutoff: float) -> bool:
    if official in candidates:
        return True
    for candidate in candidates:
        if SequenceMatcher(None, official, candidate).ratio() >= cutoff:
            return True
    return False


def match_percent(user_answer: Optional[str], official_answer: Optional[str], cfg: Optional[MatchingConfig] = None) -> float:
    """Percentage of the official answer's keywords covered by the user answer.

    Tokens match exactly after plural folding or fuzzily above the configured
    similarity cut-off. When the official answer has no keywords left after
    stop-word filtering, every token counts so that an identical answer still
    scores 100.
    """

    cfg = cfg or matching_config()
    user_tokens = _tokens(normalize(user_answer))
    official_tokens = _tokens(normalize(official_answer))
    if not user_tokens or not official_tokens:
        return 0.0

    official = _keywords(official_tokens, cfg)
    user = _keywords(user_tokens, cfg)
    if not official:
        official = {_stem(token) for token in official_tokens}
        user = {_stem(token) for token in user_tokens}
    if not user:
        return 0.0

    matched = sum(1 for keyword in official if _token_matches(keyword, user, cfg.token_similarity))
    return round(matched / len(official) * 100, 2)


def evaluate_single_choice(question: Question, selected_ids: Optional[Iterable[str]]) -> bool:
    selected = list(selected_ids or [])
    if len(selected) != 1:
        return False
    return selected[0] in question.correct_option_ids()


def evaluate_multi_choice(question: Question, selected_ids: Optional[Iterable[str]]) -> bool:
    selected = set(selected_ids or [])
    if not selected:
        return False
    return selected == question.correct_option_ids()


def evaluate_written(
    question: Question,
    user_text: Optional[str],
    threshold: float = 80.0,
    cfg: Optional[MatchingConfig] = None,
) -> Tuple[float, bool]:
    percent = match_percent(user_text, question.official_answer or "", cfg)
    return percent, percent >= threshold


def evaluate_answer(question: Question, payload: AnswerPayload, rules: SessionRules) -> AnswerEvaluation:
    """Score one answer: choice answers earn 1/0, written answers follow the scoring policy."""

    if question.type == "single_choice":
        correct = evaluate_single_choice(question, payload.selected_option_ids)
        return AnswerEvaluation(is_correct=correct, score=1.0 if correct else 0.0)
    if question.type == "multi_choice":
        correct = evaluate_multi_choice(question, payload.selected_option_ids)
        return AnswerEvaluation(is_correct=correct, score=1.0 if correct else 0.0)

    percent, correct = evaluate_written(question, payload.given_text, rules.written_threshold)
    if rules.written_scoring == "binary":
        points = rules.written_weight if correct else 0.0
    else:
        points = rules.written_weight * percent / 100
    return AnswerEvaluation(is_correct=correct, score=round(points, 2), match_percent=percent)


def max_points(question_type: str, rules: SessionRules) -> float:
    return rules.written_weight if question_type == "written" else 1.0


__all__ = [
    "AnswerEvaluation",
    "evaluate_answer",
    "evaluate_multi_choice",
    "evaluate_single_choice",
    "evaluate_written",
    "match_percent",
    "max_points",
    "normalize",
]
