import json
import logging

from channels.generic.websocket import AsyncWebsocketConsumer

from .notifications import progress_group_name

logger = logging.getLogger(__name__)


class ProgressConsumer(AsyncWebsocketConsumer):
    """Streams the connected user's level-ups and achievement unlocks."""

    async def connect(self):
        self.user = self.scope.get('user')
        if self.user is None or not self.user.is_authenticated:
            await self.close()
            return

        self.group_name = progress_group_name(self.user.id)
        await self.channel_layer.group_add(
            self.group_name,
            self.channel_name
        )
        await self.accept()
        logger.info(f"Progress socket connected for user {self.user.id}")

    async def disconnect(self, close_code):
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(
                self.group_name,
                self.channel_name
            )

    async def progress_update(self, event):
        progress = event['progress']
        await self.send(json.dumps({
            'type': 'progress_update',
            'levelUp': progress.get('levelUp'),
            'achievementsUnlocked': progress.get('achievementsUnlocked', []),
            'progress': progress,
        }))
