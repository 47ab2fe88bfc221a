from __future__ import annotations

from dataclasses import dataclass


KIND_CLASSIFICATION = "classification"
KIND_SUMMARY = "summary"

CACHE_KINDS = (KIND_CLASSIFICATION, KIND_SUMMARY)


@dataclass(frozen=True)
class Verdict:
    is_clickbait: bool
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class ClassificationRecord:
    key: str
    is_clickbait: bool
    confidence: float
    reason: str
    written_at: float

    def to_verdict(self) -> Verdict:
        return Verdict(is_clickbait=self.is_clickbait, confidence=self.confidence, reason=self.reason)


@dataclass(frozen=True)
class SummaryRecord:
    key: str
    text: str
    url: str
    written_at: float


@dataclass(frozen=True)
class CacheEntry:
    kind: str
    record: ClassificationRecord | SummaryRecord

    @property
    def written_at(self) -> float:
        return self.record.written_at

    def is_valid(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.record.written_at) < ttl_seconds
