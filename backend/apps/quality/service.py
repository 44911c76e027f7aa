"""
Quality check runner.

test_type selects the checks:
- metrics:   static chunk/figure/embedding metrics
- questions: golden-question generation
- search:    golden questions probed through hybrid search
- all:       everything
"""
import logging
from typing import Dict

from django.utils import timezone

from apps.manuals.models import Document
from apps.manuals.validation import ValidationError
from apps.quality.golden import (
    QuestionGenerationError,
    generate_golden_questions,
    pass_rate,
    probe_search,
)
from apps.quality.metrics import collect_metrics

logger = logging.getLogger(__name__)

TEST_TYPES = ('metrics', 'questions', 'search', 'all')


def run_quality_check(manual_id: str, tenant_id: str, test_type: str = 'all') -> Dict:
    """
    Build the quality report for one manual.

    Raises:
        ValidationError: Unknown test_type, unknown manual or tenant mismatch
    """
    if test_type not in TEST_TYPES:
        raise ValidationError(f"test_type must be one of: {', '.join(TEST_TYPES)}")

    document = Document.objects.filter(manual_id=manual_id).first()
    if document is None:
        raise ValidationError(f"Unknown manual: {manual_id}")
    if document.tenant_id != tenant_id:
        raise ValidationError(f"Manual {manual_id} belongs to another tenant")

    logger.info(f"Starting quality check for {manual_id}, test_type={test_type}")

    report = {
        "manual_id": manual_id,
        "test_type": test_type,
        "timestamp": timezone.now().isoformat(),
        "metrics": None,
        "issues": [],
        "recommendations": [],
        "overall_score": None,
        "golden_questions": [],
        "search_tests": [],
        "search_pass_rate": None,
    }

    if test_type in ('metrics', 'all'):
        metrics = collect_metrics(manual_id, tenant_id)
        report["metrics"] = metrics.to_dict()
        report["issues"] = metrics.issues
        report["recommendations"] = metrics.recommendations
        report["overall_score"] = metrics.overall_score

    if test_type in ('questions', 'search', 'all'):
        try:
            questions = generate_golden_questions(manual_id, tenant_id)
        except QuestionGenerationError as e:
            logger.warning(f"Golden questions unavailable for {manual_id}: {e}")
            report["question_generation_error"] = str(e)
            questions = []

        report["golden_questions"] = [q.to_dict() for q in questions]

        if test_type in ('search', 'all') and questions:
            probes = probe_search(manual_id, tenant_id, questions)
            report["search_tests"] = [p.to_dict() for p in probes]
            report["search_pass_rate"] = pass_rate(probes)

    logger.info(
        f"Quality check complete for {manual_id}: overall={report['overall_score']}, "
        f"search_pass_rate={report['search_pass_rate']}"
    )
    return report
