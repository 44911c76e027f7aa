"""
WebSocket URL routing for the indexing app.
"""
from django.urls import re_path

from apps.indexing.consumers import ManualProgressConsumer

websocket_urlpatterns = [
    re_path(r"ws/manuals/(?P<manual_id>[^/]+)/progress/?$", ManualProgressConsumer.as_asgi()),
]
