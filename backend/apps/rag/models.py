"""
Query log model: one row per answered question (append-only).
"""
import uuid
from django.db import models


class QualityTier(models.TextChoices):
    HIGH = 'high', 'High'
    MEDIUM = 'medium', 'Medium'
    LOW = 'low', 'Low'


class QueryLog(models.Model):
    """
    One answered question.

    Written once per orchestrator invocation and never updated.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    tenant_id = models.CharField(max_length=255, db_index=True)
    user_id = models.CharField(max_length=255, null=True, blank=True)
    manual_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    channel = models.CharField(max_length=20, default='web')

    query_text = models.TextField()
    normalized_query = models.TextField(blank=True, default='')
    response_text = models.TextField(blank=True, default='')

    quality_score = models.FloatField(null=True, blank=True)
    quality_tier = models.CharField(
        max_length=10,
        choices=QualityTier.choices,
        default=QualityTier.LOW,
    )
    claim_coverage = models.FloatField(null=True, blank=True)
    numeric_flags = models.JSONField(default=list, blank=True)
    top_score = models.FloatField(null=True, blank=True)

    retrieval_method = models.CharField(max_length=50, blank=True, default='')
    model_name = models.CharField(max_length=100, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'query_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant_id', 'created_at'], name='query_logs_tenant_created_idx'),
            models.Index(fields=['quality_tier'], name='query_logs_tier_idx'),
        ]

    def __str__(self):
        return f"Query {self.id} ({self.quality_tier})"
