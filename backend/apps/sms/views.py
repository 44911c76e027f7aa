"""
Twilio SMS webhook.

POST /api/sms/<tenant_id>/webhook with Twilio form fields Body and From.
Always answers with TwiML (HTTP 200), including on errors, so Twilio
delivers a reply instead of retrying the webhook.
"""
import logging
from typing import Optional

from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.ops.audit import audit_sms_received
from apps.ops.ratelimit import check_sms_rate_limit, rate_limited
from apps.rag.orchestrator import AskRequest, answer_question
from apps.sms.models import SmsSubscriber
from apps.sms.replies import (
    MSG_EMPTY,
    MSG_ERROR,
    MSG_NOT_OPTED_IN,
    MSG_RATE_LIMITED,
    MSG_SUBSCRIBED,
    MSG_UNSUBSCRIBED,
    twiml_response,
)

logger = logging.getLogger(__name__)


def sms_sender_key(request, tenant_id: str, *args, **kwargs) -> Optional[str]:
    """Rate limit key "tenant:phone" from the Twilio form."""
    sender = (request.POST.get("From") or "").strip()
    if not sender:
        return None
    return f"{tenant_id}:{sender}"


def set_opt_in(tenant_id: str, phone_number: str, opted_in: bool) -> SmsSubscriber:
    subscriber, _ = SmsSubscriber.objects.get_or_create(
        tenant_id=tenant_id, phone_number=phone_number
    )
    subscriber.opted_in = opted_in
    if opted_in:
        subscriber.opted_in_at = timezone.now()
    else:
        subscriber.opted_out_at = timezone.now()
    subscriber.save()
    return subscriber


@csrf_exempt
@require_http_methods(["POST"])
@rate_limited(
    check_sms_rate_limit,
    key_func=sms_sender_key,
    endpoint='sms',
    response_func=lambda result: twiml_response(MSG_RATE_LIMITED),
)
def sms_webhook(request, tenant_id):
    body = (request.POST.get("Body") or "").strip()
    sender = (request.POST.get("From") or "").strip()
    keyword = body.upper()

    if not sender:
        # Nothing to subscribe or answer
        return twiml_response(MSG_EMPTY)

    try:
        if keyword == "STOP":
            set_opt_in(tenant_id, sender, False)
            audit_sms_received(request, tenant_id, 'opt_out', len(body))
            return twiml_response(MSG_UNSUBSCRIBED)

        if keyword == "START":
            set_opt_in(tenant_id, sender, True)
            audit_sms_received(request, tenant_id, 'opt_in', len(body))
            return twiml_response(MSG_SUBSCRIBED)

        if not body:
            return twiml_response(MSG_EMPTY)

        subscriber = SmsSubscriber.objects.filter(
            tenant_id=tenant_id, phone_number=sender, opted_in=True
        ).first()
        if subscriber is None:
            audit_sms_received(request, tenant_id, 'not_opted_in', len(body))
            return twiml_response(MSG_NOT_OPTED_IN)

        audit_sms_received(request, tenant_id, 'ask', len(body))
        response = answer_question(AskRequest(
            question=body,
            tenant_id=tenant_id,
            user_id=sender,
            manual_id=subscriber.default_manual_id,
            channel='sms',
        ))
        return twiml_response(response.answer)

    except Exception:
        logger.exception(f"Error processing SMS for tenant {tenant_id}")
        return twiml_response(MSG_ERROR)
