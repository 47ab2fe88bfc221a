from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from baitbreaker.storage.types import Verdict


logger = logging.getLogger(__name__)


DEFAULT_RULES: dict = {
    "confidence": {"base": 0.3, "per_match": 0.15, "max": 0.95},
    "patterns": [
        {
            "name": "curiosity gap",
            "regex": r"\b(you won't believe|shocking|revealed|secret|this one trick|this one food|this simple habit"
            r"|doctors (?:hate|are (?:stunned|shocked))|never guess|what happened next|number \d+ will"
            r"|will change your life|jaw[- ]?dropping|mind[- ]?blowing|burns fat)\b",
        },
        {"name": "listicle", "regex": r"^\s*\d+\s+(ways|things|reasons|tips)"},
        {"name": "question", "regex": r"\?$"},
        {"name": "question form", "regex": r"^(what|why|how|when|where|who|which)\b"},
        {"name": "top list", "regex": r"top\s+\d+"},
        {"name": "hype words", "regex": r"unbelievable|insane|crazy|epic|ultimate"},
        {"name": "urgency", "regex": r"can't believe|stop what you're doing|must see"},
    ],
}


@dataclass(frozen=True)
class CompiledPattern:
    name: str
    pattern: re.Pattern


def _compile_patterns(entries: list) -> list[CompiledPattern]:
    out: list[CompiledPattern] = []
    for entry in entries:
        if isinstance(entry, str):
            name, source = entry, entry
        elif isinstance(entry, dict) and entry.get("regex"):
            source = str(entry["regex"])
            name = str(entry.get("name") or source)
        else:
            continue
        try:
            out.append(CompiledPattern(name=name, pattern=re.compile(source, re.IGNORECASE)))
        except re.error:
            logger.warning("skipping invalid clickbait pattern: %s", source)
    return out


class HeuristicClassifier:
    """Regex rules; confidence grows with the number of distinct matches."""

    def __init__(self, rules: dict | None = None):
        rules = rules or {}
        conf = {**DEFAULT_RULES["confidence"], **(rules.get("confidence") or {})}
        self._base = float(conf["base"])
        self._per_match = float(conf["per_match"])
        self._max = float(conf["max"])
        self._patterns = _compile_patterns(rules.get("patterns") or DEFAULT_RULES["patterns"])

    @property
    def pattern_names(self) -> list[str]:
        return [p.name for p in self._patterns]

    def detect(self, text: str) -> Verdict:
        t = (text or "").strip()
        if not t:
            return Verdict(is_clickbait=False, confidence=0.0, reason="")

        matched = [p.name for p in self._patterns if p.pattern.search(t)]
        if not matched:
            return Verdict(is_clickbait=False, confidence=0.0, reason="")

        confidence = min(self._base + len(matched) * self._per_match, self._max)
        return Verdict(is_clickbait=True, confidence=round(confidence, 4), reason=", ".join(matched))

    async def classify(self, text: str) -> Verdict:
        return self.detect(text)
