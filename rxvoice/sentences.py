"""
Sentence boundary detection for streaming text.

LLM output arrives a few tokens at a time; synthesis sounds best when it is fed whole
sentences. The detector buffers increments and hands back speakable units as soon as a
boundary is trustworthy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Literal, Optional

from .settings import settings

UnitKind = Literal["sentence", "clause", "phrase"]

_SENTENCE_END_RE = re.compile(r"[.!?]+\s+")
_ABBREVIATION_RE = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|Prof|Sr|Jr|vs|etc|Inc|Corp|Ltd|Co|St|Ave|Rd|Blvd|Apt|No|"
    r"Ph\.D|M\.D|B\.A|M\.A|U\.S|U\.K|e\.g|i\.e|a\.m|p\.m)\.$",
    re.IGNORECASE,
)
_WORD_RE = re.compile(r"\w")
_PRONOUN_RE = re.compile(r"\b(I|you|he|she|it|we|they|this|that)\b", re.IGNORECASE)
_AUX_RE = re.compile(r"\b(is|are|was|were|have|has|had|will|would|can|could|should|must)\b", re.IGNORECASE)
_CONJUNCTION_RE = re.compile(
    r"\b(and|but|or|because|since|although|while|if|when|where|that|which)\b", re.IGNORECASE
)
_SUBJECT_RE = re.compile(r"\b(I|you|he|she|it|we|they|this|that|there|here|\w+s?)\b", re.IGNORECASE)
_VERB_RE = re.compile(
    r"\b(is|are|was|were|have|has|had|do|does|did|will|would|can|could|should|must|"
    r"go|goes|went|come|comes|came|see|sees|saw|get|gets|got|take|takes|took|give|gives|gave|"
    r"make|makes|made|think|thinks|thought|know|knows|knew|say|says|said|tell|tells|told|"
    r"work|works|worked|help|helps|helped|want|wants|wanted|need|needs|needed|like|likes|liked|"
    r"try|tries|tried|use|uses|used|find|finds|found|look|looks|looked|feel|feels|felt|"
    r"seem|seems|seemed|become|becomes|became|remain|remains|remained)\b",
    re.IGNORECASE,
)


@dataclass
class SentenceUnit:
    text: str
    is_complete: bool
    confidence: float
    kind: UnitKind


class SentenceBoundaryDetector:
    """
    Usage:
        det = SentenceBoundaryDetector()
        for unit in det.add_text(delta):   # complete units found so far
            speak(unit.text)
        tail = det.flush()                 # leftover text, low confidence, or None
    """

    def __init__(self, min_length: int = settings.min_sentence_chars):
        self.min_length = min_length
        self._buffer = ""

    @property
    def buffer(self) -> str:
        return self._buffer

    def add_text(self, text: str) -> List[SentenceUnit]:
        if text:
            self._buffer += text
        return self._extract()

    def _extract(self) -> List[SentenceUnit]:
        units: List[SentenceUnit] = []
        start = 0
        for match in _SENTENCE_END_RE.finditer(self._buffer):
            candidate = self._buffer[start:match.end()].strip()
            if self._is_valid(candidate):
                units.append(
                    SentenceUnit(
                        text=candidate,
                        is_complete=True,
                        confidence=self._confidence(candidate),
                        kind=self._classify(candidate),
                    )
                )
                start = match.end()
        if start:
            self._buffer = self._buffer[start:]
        return units

    def _is_valid(self, text: str) -> bool:
        if len(text) < self.min_length:
            return False
        if _ABBREVIATION_RE.search(text):
            return False
        if not _WORD_RE.search(text):
            return False
        return True

    @staticmethod
    def _confidence(sentence: str) -> float:
        confidence = 0.5
        if len(sentence) > 50:
            confidence += 0.2
        if len(sentence) > 100:
            confidence += 0.1
        if sentence[:1].isupper():
            confidence += 0.2
        if sentence.rstrip().endswith(("!", "?")):
            confidence += 0.1
        if _PRONOUN_RE.search(sentence):
            confidence += 0.1
        if _AUX_RE.search(sentence):
            confidence += 0.1
        return min(1.0, round(confidence, 2))

    @staticmethod
    def _classify(text: str) -> UnitKind:
        if text.rstrip().endswith(("!", "?")):
            return "sentence"
        if _SUBJECT_RE.search(text) and _VERB_RE.search(text):
            return "sentence"
        if _CONJUNCTION_RE.search(text):
            return "clause"
        return "phrase"

    def flush(self) -> Optional[SentenceUnit]:
        text = self._buffer.strip()
        self._buffer = ""
        if not text:
            return None
        return SentenceUnit(text=text, is_complete=False, confidence=0.3, kind="phrase")

    def clear(self):
        self._buffer = ""


# ----------------- text helpers -----------------
_MD_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_MD_ITALIC_RE = re.compile(r"\*(.*?)\*")
_MD_CODE_RE = re.compile(r"`(.*?)`")
_URL_RE = re.compile(r"https?://\S+")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([,.!?;:])")
_MISSING_SPACE_RE = re.compile(r"([.!?])\s*([A-Z])")


def chunk_for_tts(text: str, max_chunk_length: int = 200) -> List[str]:
    """Split a full response into synthesis-sized chunks along sentence boundaries."""
    det = SentenceBoundaryDetector()
    units = det.add_text(text)
    tail = det.flush()
    if tail:
        units.append(tail)

    chunks: List[str] = []
    current = ""
    for unit in units:
        if len(current) + len(unit.text) + (1 if current else 0) <= max_chunk_length:
            current = f"{current} {unit.text}" if current else unit.text
        else:
            if current:
                chunks.append(current)
            current = unit.text
    if current:
        chunks.append(current)
    return chunks


def clean_for_tts(text: str) -> str:
    """Strip markdown and URLs and normalise spacing so the voice does not read formatting."""
    t = re.sub(r"\s+", " ", text)
    t = _MD_BOLD_RE.sub(r"\1", t)
    t = _MD_ITALIC_RE.sub(r"\1", t)
    t = _MD_CODE_RE.sub(r"\1", t)
    t = _URL_RE.sub("[link]", t)
    t = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", t)
    t = _MISSING_SPACE_RE.sub(r"\1 \2", t)
    return t.strip()


def estimate_speaking_ms(text: str, wpm: int = 150) -> float:
    words = len(text.split())
    return words / wpm * 60 * 1000
