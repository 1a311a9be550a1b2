"""
Order State Transition Validator
================================

Prevents invalid order status changes and keeps the lifecycle monotonic:

    pending -> paid | expired | failed

Every terminal state is final. Backwards transitions (paid -> pending) and
resurrections (expired -> paid) are rejected.
"""

import logging
from typing import Dict, Optional, Set, Union

from models import OrderStatus
from utils.exceptions import OrderExpiredError, OrderNotPendingError

logger = logging.getLogger(__name__)


class OrderStateValidator:
    """Validates order state transitions"""

    VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
        OrderStatus.PENDING: {
            OrderStatus.PAID,
            OrderStatus.EXPIRED,
            OrderStatus.FAILED,
        },
        # Terminal states
        OrderStatus.PAID: set(),
        OrderStatus.EXPIRED: set(),
        OrderStatus.FAILED: set(),
    }

    TERMINAL_STATES: Set[OrderStatus] = {
        OrderStatus.PAID,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
    }

    @staticmethod
    def _coerce(status: Union[str, OrderStatus, None]) -> Optional[OrderStatus]:
        if status is None or isinstance(status, OrderStatus):
            return status
        return OrderStatus(status)

    @classmethod
    def is_valid_transition(
        cls,
        current_status: Union[str, OrderStatus],
        new_status: Union[str, OrderStatus],
    ) -> bool:
        current = cls._coerce(current_status)
        new = cls._coerce(new_status)
        if current is None:
            # Creation always starts in PENDING
            return new == OrderStatus.PENDING
        return new in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal_state(cls, status: Union[str, OrderStatus]) -> bool:
        return cls._coerce(status) in cls.TERMINAL_STATES

    @classmethod
    def get_valid_transitions(cls, status: Union[str, OrderStatus]) -> Set[OrderStatus]:
        return set(cls.VALID_TRANSITIONS.get(cls._coerce(status), set()))

    @classmethod
    def validate_transition(
        cls,
        order_id: str,
        current_status: Union[str, OrderStatus],
        new_status: Union[str, OrderStatus],
    ) -> None:
        """Raise the matching InvalidStateError when the transition is not allowed"""
        if cls.is_valid_transition(current_status, new_status):
            return

        current = cls._coerce(current_status)
        new = cls._coerce(new_status)
        logger.warning(
            f"🚫 ORDER_INVALID_TRANSITION: {order_id} {current.value if current else None} "
            f"-> {new.value if new else None}"
        )
        if current == OrderStatus.EXPIRED:
            raise OrderExpiredError(f"Order {order_id} expired", details={"order_id": order_id})
        raise OrderNotPendingError(
            f"Order {order_id} is {current.value if current else 'unknown'}",
            details={"order_id": order_id, "status": current.value if current else None},
        )
