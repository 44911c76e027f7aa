"""
Adaptive answer style.

Retrieval signal strength (top score, average of the top three, number of
strong hits) decides whether the assistant answers from the manual
(standard mode) or switches to a hedged, checklist-driven diagnostic flow
(guided mode). Weak-retrieval detection is a pure function of the three
signals.
"""
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence

from django.conf import settings

MODE_STANDARD = 'standard'
MODE_GUIDED = 'guided'

HISTORY_TURNS = 6

BASE_SYSTEM_PROMPT = """You are a field service assistant for equipment technicians.
Answer from the numbered manual excerpts below. Cite the excerpt number and
pages inline, like [2] (p. 14). Never invent specifications, part numbers,
connector ids or voltages; if a value is not in the excerpts, say it is not
in the manual. Call out power-off and safety steps before any resistance
check or work on moving parts. Keep answers short and practical: at most
three actions per reply, each with what to do and what reading to expect."""

STANDARD_SUFFIX = """

Retrieval is STRONG. Prefer steps backed by the excerpts and name the
section or page inline."""

GUIDED_SUFFIX = """

Retrieval is WEAK. Be candid about what the manual does not cover, mark
inferences as "Working theory", and walk the technician through a short
field checklist (power, fuses, connectors, error codes) that narrows the
fault down. End with one question that would help narrow it further."""


@dataclass
class Heuristics:
    min_top_score: float = 0.62
    weak_bundle_avg: float = 0.58
    min_strong_hits: int = 2

    @classmethod
    def from_settings(cls) -> 'Heuristics':
        return cls(
            min_top_score=getattr(settings, 'ANSWER_MIN_TOP_SCORE', 0.62),
            weak_bundle_avg=getattr(settings, 'ANSWER_WEAK_BUNDLE_AVG', 0.58),
            min_strong_hits=getattr(settings, 'ANSWER_MIN_STRONG_HITS', 2),
        )


@dataclass
class RetrievalSignals:
    top_score: float = 0.0
    avg_top3: float = 0.0
    strong_hits: int = 0

    def to_dict(self) -> Dict:
        return {k: round(v, 4) if isinstance(v, float) else v for k, v in asdict(self).items()}


@dataclass
class AnswerStyle:
    adaptive_mode: str
    is_weak: bool

    @property
    def system_prompt(self) -> str:
        suffix = GUIDED_SUFFIX if self.adaptive_mode == MODE_GUIDED else STANDARD_SUFFIX
        return BASE_SYSTEM_PROMPT + suffix


def compute_signals(results: Sequence, heuristics: Optional[Heuristics] = None) -> RetrievalSignals:
    """
    Signals over ranked results (anything with a `score`).

    A strong hit scores at or above the minimum top score.
    """
    heuristics = heuristics or Heuristics.from_settings()
    scores = [float(r.score or 0.0) for r in results]
    if not scores:
        return RetrievalSignals()

    top3 = scores[:3]
    return RetrievalSignals(
        top_score=scores[0],
        avg_top3=sum(top3) / len(top3),
        strong_hits=sum(1 for s in scores if s >= heuristics.min_top_score),
    )


def is_weak_retrieval(
    top_score: float,
    avg_top3: float,
    strong_hits: int,
    heuristics: Optional[Heuristics] = None,
) -> bool:
    """
    Weak when the top score is below the floor, when there are too few
    strong hits, or when the top three are mediocre on average and there
    are not enough strong hits to make up for it.
    """
    h = heuristics or Heuristics.from_settings()
    if top_score < h.min_top_score:
        return True
    if strong_hits < h.min_strong_hits:
        return True
    return avg_top3 < h.weak_bundle_avg and strong_hits < 3


def select_style(signals: RetrievalSignals, heuristics: Optional[Heuristics] = None) -> AnswerStyle:
    weak = is_weak_retrieval(signals.top_score, signals.avg_top3, signals.strong_hits, heuristics)
    return AnswerStyle(adaptive_mode=MODE_GUIDED if weak else MODE_STANDARD, is_weak=weak)


def format_pages(page_start: Optional[int], page_end: Optional[int]) -> str:
    if not page_start:
        return 'p?'
    if page_end and page_end != page_start:
        return f"p{page_start}-{page_end}"
    return f"p{page_start}"


def build_context(results: Sequence) -> str:
    """Numbered context lines: [i] [pX-Y] content."""
    return "\n\n".join(
        f"[{i}] [{format_pages(r.page_start, r.page_end)}] {r.content}"
        for i, r in enumerate(results, 1)
    )


def shape_messages(
    question: str,
    results: Sequence,
    style: AnswerStyle,
    history: Optional[List[Dict[str, str]]] = None,
) -> List[Dict[str, str]]:
    """
    Build chat messages for the generation oracle.

    Only user/assistant turns from the last HISTORY_TURNS entries of the
    history are kept.
    """
    messages = [{"role": "system", "content": style.system_prompt}]

    for turn in (history or [])[-HISTORY_TURNS:]:
        role = turn.get("role")
        content = (turn.get("content") or '').strip()
        if role in ("user", "assistant") and content:
            messages.append({"role": role, "content": content})

    if results:
        context = build_context(results)
    else:
        context = "(no matching manual excerpts were found)"

    messages.append({
        "role": "user",
        "content": f"Manual excerpts:\n\n{context}\n\nQuestion: {question}",
    })
    return messages
