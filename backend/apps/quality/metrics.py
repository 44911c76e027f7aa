"""
Static quality metrics for an ingested manual.

compute_metrics() is a pure function over chunk contents, the embedded
chunk count and figure captions; collect_metrics() reads them from the
store for one manual.

Scoring:
    chunk score     = clamp(100 - 5 * short - 2 * long, 0, 100)
    overall         = round(mean(chunk score, enhancement rate, embedding rate))
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from apps.indexing.models import Chunk, Figure

SHORT_CHUNK_CHARS = 100
LONG_CHUNK_CHARS = 2000
PREFIX_CHARS = 200
ENHANCED_CAPTION_CHARS = 50

SHORT_RATIO_LIMIT = 0.3
EMBEDDING_RATE_FLOOR = 95
ENHANCEMENT_RATE_FLOOR = 50
AVG_LENGTH_FLOOR = 200

ISSUE_NO_CHUNKS = "No chunks found - processing may have failed"
ISSUE_SHORT_CHUNKS = "Too many short chunks - may indicate poor parsing"
ISSUE_MISSING_EMBEDDINGS = "Some chunks missing embeddings - search quality affected"
ISSUE_LOW_ENHANCEMENT = "Low figure enhancement rate - vision processing may have failed"
ISSUE_SHORT_AVERAGE = "Average chunk length too short - context may be fragmented"

RECOMMEND_EXCELLENT = "Excellent quality! Manual ready for production use."
RECOMMEND_ACCEPTABLE = "Good quality with minor issues. Consider re-uploading if critical."
RECOMMEND_REUPLOAD = "Poor quality detected. Recommend re-uploading the manual."


@dataclass
class QualityMetrics:
    total_chunks: int = 0
    avg_length: int = 0
    short_chunks: int = 0
    long_chunks: int = 0
    uniqueness: int = 0
    embedded_chunks: int = 0
    embedding_rate: int = 0
    total_figures: int = 0
    enhanced_figures: int = 0
    enhancement_rate: int = 0
    chunk_score: int = 0
    overall_score: int = 0
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "chunk_quality": {
                "total_chunks": self.total_chunks,
                "avg_length": self.avg_length,
                "short_chunks": self.short_chunks,
                "long_chunks": self.long_chunks,
                "uniqueness": self.uniqueness,
                "chunk_score": self.chunk_score,
            },
            "figure_quality": {
                "total_figures": self.total_figures,
                "enhanced_descriptions": self.enhanced_figures,
                "enhancement_rate": self.enhancement_rate,
            },
            "embedding_quality": {
                "embedded_chunks": self.embedded_chunks,
                "embedding_rate": self.embedding_rate,
            },
            "overall": self.overall_score,
        }


def chunk_score(short_chunks: int, long_chunks: int) -> int:
    return min(100, max(0, 100 - short_chunks * 5 - long_chunks * 2))


def recommendation_for(overall_score: int) -> str:
    if overall_score >= 85:
        return RECOMMEND_EXCELLENT
    if overall_score >= 70:
        return RECOMMEND_ACCEPTABLE
    return RECOMMEND_REUPLOAD


def compute_metrics(
    contents: Sequence[str],
    embedded_count: int,
    captions: Sequence[Optional[str]],
) -> QualityMetrics:
    """
    Compute the quality report for one manual.

    A manual without figures has an enhancement rate of 0.
    """
    metrics = QualityMetrics()
    total = len(contents)

    if not total:
        metrics.issues.append(ISSUE_NO_CHUNKS)
        metrics.recommendations.append(RECOMMEND_REUPLOAD)
        return metrics

    lengths = [len(c) for c in contents]
    avg_length = sum(lengths) / total

    metrics.total_chunks = total
    metrics.avg_length = round(avg_length)
    metrics.short_chunks = sum(1 for n in lengths if n < SHORT_CHUNK_CHARS)
    metrics.long_chunks = sum(1 for n in lengths if n > LONG_CHUNK_CHARS)
    metrics.uniqueness = round(len({c[:PREFIX_CHARS] for c in contents}) / total * 100)

    metrics.embedded_chunks = embedded_count
    metrics.embedding_rate = round(embedded_count / total * 100)

    metrics.total_figures = len(captions)
    metrics.enhanced_figures = sum(
        1 for c in captions if c and len(c) >= ENHANCED_CAPTION_CHARS
    )
    if captions:
        metrics.enhancement_rate = round(metrics.enhanced_figures / len(captions) * 100)

    metrics.chunk_score = chunk_score(metrics.short_chunks, metrics.long_chunks)
    metrics.overall_score = round(
        (metrics.chunk_score + metrics.enhancement_rate + metrics.embedding_rate) / 3
    )

    if metrics.short_chunks > total * SHORT_RATIO_LIMIT:
        metrics.issues.append(ISSUE_SHORT_CHUNKS)
    if metrics.embedding_rate < EMBEDDING_RATE_FLOOR:
        metrics.issues.append(ISSUE_MISSING_EMBEDDINGS)
    if metrics.enhancement_rate < ENHANCEMENT_RATE_FLOOR:
        metrics.issues.append(ISSUE_LOW_ENHANCEMENT)
    if avg_length < AVG_LENGTH_FLOOR:
        metrics.issues.append(ISSUE_SHORT_AVERAGE)

    metrics.recommendations.append(recommendation_for(metrics.overall_score))
    return metrics


def collect_metrics(manual_id: str, tenant_id: str) -> QualityMetrics:
    """Read chunks and figures of a manual and compute its metrics."""
    chunks = Chunk.objects.filter(manual_id=manual_id, tenant_id=tenant_id)
    contents = list(chunks.values_list('content', flat=True))
    embedded = chunks.filter(embedding__isnull=False).count()
    captions = list(
        Figure.objects.filter(manual_id=manual_id, tenant_id=tenant_id)
        .values_list('caption_text', flat=True)
    )
    return compute_metrics(contents, embedded, captions)
