"""
WebSocket consumer for manual processing progress.

Clients connect to /ws/manuals/<manual_id>/progress to receive real-time
updates while a manual is chunked, embedded and enriched.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.indexing.events import get_group_name

logger = logging.getLogger(__name__)


class ManualProgressConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer that:
    1. Joins the manual's channel group
    2. Forwards ingest_* events from workers to the client
    3. Answers ping with pong
    """

    async def connect(self):
        self.manual_id = self.scope["url_route"]["kwargs"]["manual_id"]
        self.group_name = get_group_name(self.manual_id)

        await self.channel_layer.group_add(
            self.group_name,
            self.channel_name
        )

        await self.accept()

        logger.info(f"WebSocket connected for manual {self.manual_id}")

        await self.send_json({
            "type": "connected",
            "message": "Connected to manual progress stream",
            "manualId": self.manual_id
        })

    async def disconnect(self, close_code):
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(
                self.group_name,
                self.channel_name
            )
            logger.info(f"WebSocket disconnected for manual {self.manual_id} (code={close_code})")

    async def receive_json(self, content):
        logger.debug(f"Received from client: {content}")

        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def ingest_progress(self, event):
        await self.send_json({
            "type": "ingest_progress",
            "data": event["data"]
        })

    async def ingest_complete(self, event):
        await self.send_json({
            "type": "ingest_complete",
            "data": event["data"]
        })

    async def ingest_failed(self, event):
        await self.send_json({
            "type": "ingest_failed",
            "data": event["data"]
        })
