"""YAML-driven text-matching configuration for written answers."""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

import yaml

from .settings import settings

DEFAULT_STOP_WORDS: Dict[str, List[str]] = {
    "en": [
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he",
        "in", "is", "it", "its", "of", "on", "that", "the", "to", "was", "will", "with",
    ],
    "es": [
        "el", "la", "de", "que", "y", "a", "en", "un", "es", "se", "no", "te",
        "lo", "le", "da", "su", "por", "son", "con", "para", "una", "las", "del", "los",
    ],
}


@dataclass(frozen=True)
class MatchingConfig:
    """Knobs used by the written-answer matcher."""

    stop_words: FrozenSet[str] = field(
        default_factory=lambda: frozenset(w for words in DEFAULT_STOP_WORDS.values() for w in words)
    )
    min_token_length: int = 2
    token_similarity: float = 0.85


def _load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _from_mapping(cfg: dict) -> MatchingConfig:
    groups = cfg.get("stop_words") or DEFAULT_STOP_WORDS
    words = frozenset(str(word).lower() for values in groups.values() for word in (values or []))
    similarity = float(cfg.get("token_similarity", 0.85))
    if not 0.0 < similarity <= 1.0:
        raise ValueError(f"token_similarity must be in (0, 1], got {similarity}")
    return MatchingConfig(
        stop_words=words,
        min_token_length=max(1, int(cfg.get("min_token_length", 2))),
        token_similarity=similarity,
    )


class MatchingConfigLoader:
    """Load the matching YAML and reload it when the file changes."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.MATCHING_CONFIG
        self._mtime = 0.0
        self._config = MatchingConfig()
        self.reload_if_changed(force=True)

    def reload_if_changed(self, force: bool = False) -> None:
        """Reload YAML configuration when the file timestamp changes."""

        try:
            stat = os.stat(self.path)
            if not force and stat.st_mtime <= self._mtime:
                return
            cfg = _load_yaml(self.path)
            self._mtime = stat.st_mtime
        except FileNotFoundError:
            cfg = {}
            self._mtime = time.time()

        self._config = _from_mapping(cfg)

    @property
    def config(self) -> MatchingConfig:
        self.reload_if_changed()
        return self._config


_loader: Optional[MatchingConfigLoader] = None


def matching_config() -> MatchingConfig:
    """Return the current matching configuration."""

    global _loader
    if _loader is None:
        _loader = MatchingConfigLoader()
    return _loader.config


__all__ = ["DEFAULT_STOP_WORDS", "MatchingConfig", "MatchingConfigLoader", "matching_config"]
