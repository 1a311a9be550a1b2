"""
Notification Queue Processor
Delivers due notifications (admin alerts, merchant callbacks and webhooks)
"""

import logging

from config import Config

logger = logging.getLogger(__name__)


async def run_notification_processor(notification_service, batch_size: int = None):
    """Process one batch of due notifications"""
    try:
        stats = await notification_service.process_due(batch_size or Config.NOTIFICATION_BATCH_SIZE)

        if stats["processed"] > 0:
            logger.info(
                f"📨 Notification queue processed: {stats['processed']} notifications, "
                f"{stats['sent']} sent, {stats['failed']} failed, {stats['dead']} dead"
            )
        return stats

    except Exception as e:
        logger.error(f"Error processing notification queue: {e}", exc_info=True)
        return {"processed": 0, "sent": 0, "failed": 0, "dead": 0}
