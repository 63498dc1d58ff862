import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.db import transaction

logger = logging.getLogger(__name__)


def progress_group_name(user_id):
    return f'progress_{user_id}'


def publish_award(result):
    """
    Push level-up and achievement events to the user's websocket group once
    the award's transaction has committed.
    """
    if not getattr(settings, 'PROGRESS_NOTIFICATIONS_ENABLED', True):
        return

    user_id = result.progress.user_id
    payload = result.as_dict()

    def send():
        channel_layer = get_channel_layer()
        if channel_layer is None:
            return
        try:
            async_to_sync(channel_layer.group_send)(
                progress_group_name(user_id),
                {
                    'type': 'progress_update',
                    'progress': payload,
                }
            )
        except Exception as e:
            logger.error(f"Failed to send progress notification to user {user_id}: {str(e)}")

    transaction.on_commit(send)
