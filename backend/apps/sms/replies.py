"""
SMS reply text and TwiML.

Replies are capped at SMS_MAX_LENGTH (280) characters by the transport;
longer text keeps a 277-character prefix followed by "...".
"""
from typing import Optional
from xml.sax.saxutils import escape

from django.conf import settings
from django.http import HttpResponse

ELLIPSIS = "..."

MSG_UNSUBSCRIBED = "You've been unsubscribed from manual assistant SMS. Text START to re-subscribe."
MSG_SUBSCRIBED = "You've been re-subscribed to manual assistant SMS. Send your troubleshooting questions anytime!"
MSG_EMPTY = "Please send a question about your equipment and I'll help troubleshoot it."
MSG_NOT_OPTED_IN = (
    "Welcome! To receive SMS support, text START to opt in. "
    "Contact support if you need assistance."
)
MSG_ERROR = "Sorry, I couldn't process that right now. Please try again or use the web dashboard at your facility."
MSG_RATE_LIMITED = "You're sending questions too quickly. Please wait a minute and try again."

XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def sms_max_length() -> int:
    return getattr(settings, 'SMS_MAX_LENGTH', 280)


def truncate_sms(text: str, limit: Optional[int] = None) -> str:
    """Cap text at `limit` characters, ending truncated text with '...'."""
    limit = limit or sms_max_length()
    text = text or ''
    if len(text) <= limit:
        return text
    return text[:limit - len(ELLIPSIS)] + ELLIPSIS


def twiml_message(text: str) -> str:
    """A TwiML document with one XML-escaped, length-capped message."""
    body = escape(truncate_sms(text), XML_ENTITIES)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<Response>\n'
        f'  <Message>{body}</Message>\n'
        '</Response>'
    )


def twiml_response(text: str) -> HttpResponse:
    return HttpResponse(twiml_message(text), content_type="text/xml")
