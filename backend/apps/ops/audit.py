"""
Audit logging for operations.

Structured JSON logging of key events. Question text, answers and phone
numbers never go into audit events; only lengths, counts and identifiers.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Ingestion events
    INGESTION_STARTED = 'ingestion.started'
    INGESTION_COMPLETED = 'ingestion.completed'
    INGESTION_FAILED = 'ingestion.failed'
    INGESTION_RETRIED = 'ingestion.retried'
    REINGEST_COMPLETED = 'reingest.completed'
    FIGURES_PROCESSED = 'figures.processed'

    # Query events
    RAG_QUERY = 'rag.query'
    QUALITY_CHECK = 'quality.check'
    SMS_RECEIVED = 'sms.received'

    # Rate limiting events
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
    return request_id


def log_audit(
    event_type: str,
    tenant_id: Optional[str] = None,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        tenant_id: Tenant the event belongs to
        user_id: Caller-supplied user identifier, if any
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success', 'partial' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'tenant_id': tenant_id,
        'user_id': user_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    tenant_id: Optional[str] = None,
    user_id: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with request context auto-populated."""
    log_audit(
        event_type=event_type,
        tenant_id=tenant_id,
        user_id=user_id,
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_ingestion_started(job_id: str, manual_id: str, tenant_id: str, queued_items: int):
    """Log ingestion job queued."""
    log_audit(
        AuditEvent.INGESTION_STARTED,
        tenant_id=tenant_id,
        metadata={
            'job_id': job_id,
            'manual_id': manual_id,
            'queued_items': queued_items,
        }
    )


def audit_ingestion_completed(job_id: str, manual_id: str, tenant_id: str,
                              succeeded: int, failed: int):
    """Log ingestion job finished (partial when failed items remain)."""
    log_audit(
        AuditEvent.INGESTION_COMPLETED,
        tenant_id=tenant_id,
        outcome='partial' if failed else 'success',
        metadata={
            'job_id': job_id,
            'manual_id': manual_id,
            'items_succeeded': succeeded,
            'items_failed': failed,
        }
    )


def audit_ingestion_failed(job_id: str, manual_id: str, tenant_id: str, error: str):
    """Log ingestion job failed."""
    log_audit(
        AuditEvent.INGESTION_FAILED,
        tenant_id=tenant_id,
        outcome='failure',
        metadata={
            'job_id': job_id,
            'manual_id': manual_id,
            'error': error[:200],
        }
    )


def audit_ingestion_retried(manual_id: str, tenant_id: str, reset: int, exhausted: int):
    """Log a re-drive of failed queue items."""
    log_audit(
        AuditEvent.INGESTION_RETRIED,
        tenant_id=tenant_id,
        metadata={
            'manual_id': manual_id,
            'reset': reset,
            'exhausted': exhausted,
        }
    )


def audit_reingest_completed(manual_id: str, tenant_id: str, chunks_created: int,
                             figures_embedded: int, outcome: str = 'success'):
    """Log a re-ingestion run."""
    log_audit(
        AuditEvent.REINGEST_COMPLETED,
        tenant_id=tenant_id,
        outcome=outcome,
        metadata={
            'manual_id': manual_id,
            'chunks_created': chunks_created,
            'figures_embedded': figures_embedded,
        }
    )


def audit_figures_processed(manual_id: str, tenant_id: str, succeeded: int, failed: int):
    """Log a figure enrichment run."""
    log_audit(
        AuditEvent.FIGURES_PROCESSED,
        tenant_id=tenant_id,
        outcome='partial' if failed else 'success',
        metadata={
            'manual_id': manual_id,
            'succeeded': succeeded,
            'failed': failed,
        }
    )


def audit_rag_query(tenant_id: str, user_id: Optional[str], channel: str,
                    question_length: int, citation_count: int, strategy: str,
                    quality_tier: Optional[str] = None):
    """Log RAG query (without the actual question text)."""
    log_audit(
        AuditEvent.RAG_QUERY,
        tenant_id=tenant_id,
        user_id=user_id,
        metadata={
            'channel': channel,
            'question_length': question_length,
            'citation_count': citation_count,
            'strategy': strategy,
            'quality_tier': quality_tier,
        }
    )


def audit_quality_check(request, manual_id: str, tenant_id: str, test_type: str,
                        overall_score: Optional[int]):
    """Log a quality evaluation run."""
    log_audit_from_request(
        request,
        AuditEvent.QUALITY_CHECK,
        tenant_id=tenant_id,
        metadata={
            'manual_id': manual_id,
            'test_type': test_type,
            'overall_score': overall_score,
        }
    )


def audit_sms_received(request, tenant_id: str, action: str, body_length: int):
    """Log an inbound SMS (no phone number, no body)."""
    log_audit_from_request(
        request,
        AuditEvent.SMS_RECEIVED,
        tenant_id=tenant_id,
        metadata={
            'action': action,
            'body_length': body_length,
        }
    )


def audit_ratelimit_exceeded(request, endpoint: str, key: str, limit: int):
    """Log rate limit exceeded."""
    log_audit_from_request(
        request,
        AuditEvent.RATELIMIT_EXCEEDED,
        outcome='failure',
        metadata={
            'endpoint': endpoint,
            'key': key,
            'limit': limit,
        }
    )
