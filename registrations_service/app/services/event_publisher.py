"""
Event Publisher Service for Registrations Service.
Publishes order events to Redis for inter-service communication.
"""

import json
import logging
from typing import Any, Dict, Optional
from ..db.redis_client import RedisManager

logger = logging.getLogger(__name__)


class OrderEventPublisher:
    """
    Publishes order events to Redis channels for inter-service communication.
    """

    def __init__(self, redis_manager: RedisManager):
        self.redis_manager = redis_manager
        self.channel_prefix = "community:orders"

    def _order_data(self, order) -> Dict[str, Any]:
        return {
            "id": order.id,
            "order_no": order.order_no,
            "event_id": order.event_id,
            "user_id": order.user_id,
            "ticket_type_id": order.ticket_type_id,
            "quantity": order.quantity,
            "total_amount": float(order.total_amount) if order.total_amount is not None else 0.0,
            "currency": order.currency,
            "status": order.status.value if order.status else None,
            "payment_method": order.payment_method.value if order.payment_method else None,
            "expired_at": order.expired_at.isoformat() if order.expired_at else None,
            "paid_at": order.paid_at.isoformat() if order.paid_at else None,
            "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        }

    async def _publish(self, event_name: str, message_type: str, order,
                       extra: Optional[Dict[str, Any]] = None):
        try:
            channel = f"{self.channel_prefix}:{event_name}"
            message = {
                "type": message_type,
                "order_id": order.id,
                "event_id": order.event_id,
                "user_id": order.user_id,
                "order_data": self._order_data(order),
            }
            if extra:
                message.update(extra)

            await self.redis_manager.publish(channel, json.dumps(message))
            logger.info(f"Published {message_type} for order {order.order_no}")

        except Exception as e:
            logger.error(f"Failed to publish {message_type}: {e}")

    async def publish_order_created(self, order, is_existing: bool = False):
        """
        Publish order created notification.

        Args:
            order: Order object to publish
            is_existing: Whether an already pending order was returned
        """
        if is_existing:
            return
        await self._publish("created", "OrderCreated", order)

    async def publish_order_paid(self, order, registration_status: Optional[str] = None):
        """
        Publish order paid notification.

        Args:
            order: Order object to publish
            registration_status: Status the held registration moved to
        """
        await self._publish("paid", "OrderPaid", order, {"registration_status": registration_status})

    async def publish_order_cancelled(self, order):
        """
        Publish order cancelled or expired notification.

        Args:
            order: Order object to publish
        """
        if order.status is not None and order.status.value == "expired":
            await self._publish("expired", "OrderExpired", order)
        else:
            await self._publish("cancelled", "OrderCancelled", order)

    async def publish_invite_redeemed(self, invite, event_id: int):
        """Publish gift invite redemption notification."""
        try:
            channel = f"{self.channel_prefix}:invite_redeemed"
            message = {
                "type": "OrderInviteRedeemed",
                "invite_id": invite.id,
                "order_id": invite.order_id,
                "event_id": event_id,
                "user_id": invite.redeemed_by,
                "redeemed_at": invite.redeemed_at.isoformat() if invite.redeemed_at else None,
            }

            await self.redis_manager.publish(channel, json.dumps(message))
            logger.info(f"Published OrderInviteRedeemed for invite {invite.id}")

        except Exception as e:
            logger.error(f"Failed to publish OrderInviteRedeemed: {e}")
