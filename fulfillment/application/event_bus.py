import logging
from collections import defaultdict
from typing import Awaitable, Callable

from fulfillment.core.models import EventTypeEnum, OutboxEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[OutboxEvent], Awaitable[None]]


class EventBus:
    """Explicit event-type -> handlers registry consulted by the outbox dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventTypeEnum | str, handler: EventHandler) -> None:
        self._handlers[str(event_type)].append(handler)
        logger.debug(f"Subscribed {handler!r} to {event_type}")

    def handlers_for(self, event_type: EventTypeEnum | str) -> list[EventHandler]:
        return list(self._handlers.get(str(event_type), []))


def build_event_bus(
    payment_orchestrator,
    booking_confirmation_handler,
    event_relay,
) -> EventBus:
    bus = EventBus()
    bus.subscribe(EventTypeEnum.ORDER_CONFIRMED, payment_orchestrator.on_order_confirmed)
    bus.subscribe(
        EventTypeEnum.LINE_ITEM_STATUS_CHANGED, payment_orchestrator.on_line_item_status_changed
    )
    bus.subscribe(
        EventTypeEnum.LINE_ITEM_REFUND_REQUESTED, payment_orchestrator.on_refund_requested
    )
    bus.subscribe(EventTypeEnum.LINE_ITEM_STATUS_CHANGED, booking_confirmation_handler)
    for event_type in event_relay.event_types:
        bus.subscribe(event_type, event_relay)
    return bus
