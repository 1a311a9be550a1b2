"""
Order Expiry Sweep
Moves pending orders past their expiry time to `expired`
"""

import logging

logger = logging.getLogger(__name__)


async def run_order_expiry_sweep(order_service):
    """Expire overdue pending orders; errors are logged and retried on the next tick"""
    try:
        expired = await order_service.sweep_expired()
        if expired:
            logger.info(f"⏰ Order expiry sweep: {expired} orders expired")
        return expired
    except Exception as e:
        logger.error(f"Error running order expiry sweep: {e}", exc_info=True)
        return 0
