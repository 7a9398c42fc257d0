from collections import deque
from collections.abc import Iterable

from fulfillment.core.errors import IllegalTransitionError, InvalidState
from fulfillment.core.models import (
    BookingStatusEnum,
    DigitalItemStatus,
    LineItem,
    LineItemKind,
    OrderStatusEnum,
    PhysicalItemStatus,
    ServiceItemStatus,
)

_P = PhysicalItemStatus
_D = DigitalItemStatus
_S = ServiceItemStatus

TRANSITIONS: dict[LineItemKind, dict[str, frozenset[str]]] = {
    LineItemKind.PHYSICAL: {
        _P.PENDING: frozenset({_P.PAYMENT_CONFIRMED, _P.CANCELLED}),
        _P.PAYMENT_CONFIRMED: frozenset({_P.PREPARING, _P.CANCELLED}),
        _P.PREPARING: frozenset({_P.READY_TO_SHIP, _P.CANCELLED}),
        _P.READY_TO_SHIP: frozenset({_P.SHIPPED, _P.CANCELLED}),
        _P.SHIPPED: frozenset({_P.OUT_FOR_DELIVERY, _P.DELIVERED, _P.CANCELLED}),
        _P.OUT_FOR_DELIVERY: frozenset({_P.DELIVERED, _P.CANCELLED}),
        _P.DELIVERED: frozenset({_P.REFUND_REQUESTED}),
        _P.REFUND_REQUESTED: frozenset({_P.REFUNDED, _P.PARTIALLY_REFUNDED}),
        _P.CANCELLED: frozenset(),
        _P.REFUNDED: frozenset(),
        _P.PARTIALLY_REFUNDED: frozenset(),
    },
    LineItemKind.DIGITAL: {
        _D.PENDING: frozenset({_D.PAYMENT_CONFIRMED, _D.CANCELLED}),
        _D.PAYMENT_CONFIRMED: frozenset({_D.ACCESS_GRANTED, _D.CANCELLED}),
        _D.ACCESS_GRANTED: frozenset({_D.DOWNLOADED, _D.REFUND_REQUESTED}),
        _D.DOWNLOADED: frozenset({_D.REFUND_REQUESTED}),
        _D.REFUND_REQUESTED: frozenset({_D.REFUNDED, _D.PARTIALLY_REFUNDED}),
        _D.CANCELLED: frozenset(),
        _D.REFUNDED: frozenset(),
        _D.PARTIALLY_REFUNDED: frozenset(),
    },
    LineItemKind.SERVICE: {
        _S.PENDING: frozenset({_S.PAYMENT_CONFIRMED, _S.CANCELLED}),
        _S.PAYMENT_CONFIRMED: frozenset({_S.BOOKING_CONFIRMED, _S.CANCELLED}),
        _S.BOOKING_CONFIRMED: frozenset({_S.REMINDER_SENT, _S.NO_SHOW, _S.CANCELLED}),
        _S.REMINDER_SENT: frozenset({_S.IN_PROGRESS, _S.NO_SHOW, _S.CANCELLED}),
        _S.IN_PROGRESS: frozenset({_S.COMPLETED}),
        _S.COMPLETED: frozenset({_S.REFUND_REQUESTED}),
        _S.NO_SHOW: frozenset(),
        _S.REFUND_REQUESTED: frozenset({_S.REFUNDED, _S.PARTIALLY_REFUNDED}),
        _S.CANCELLED: frozenset(),
        _S.REFUNDED: frozenset(),
        _S.PARTIALLY_REFUNDED: frozenset(),
    },
}

# First post-payment edge per kind; crossing it triggers payment capture.
CAPTURE_EDGES: dict[LineItemKind, tuple[str, str]] = {
    LineItemKind.PHYSICAL: (_P.PAYMENT_CONFIRMED, _P.PREPARING),
    LineItemKind.DIGITAL: (_D.PAYMENT_CONFIRMED, _D.ACCESS_GRANTED),
    LineItemKind.SERVICE: (_S.PAYMENT_CONFIRMED, _S.BOOKING_CONFIRMED),
}

FINISHED_STATUSES: dict[LineItemKind, frozenset[str]] = {
    LineItemKind.PHYSICAL: frozenset({_P.DELIVERED}),
    LineItemKind.DIGITAL: frozenset({_D.DOWNLOADED}),
    LineItemKind.SERVICE: frozenset({_S.COMPLETED, _S.NO_SHOW}),
}

_PRE_FULFILLMENT = frozenset({"pending", "payment_confirmed"})
_REFUNDED = frozenset({"refunded", "partially_refunded"})


def is_valid_status(kind: LineItemKind, status: str) -> bool:
    return status in TRANSITIONS[kind]


def allowed_transitions(kind: LineItemKind, current_status: str) -> list[str]:
    return sorted(TRANSITIONS[kind].get(current_status, frozenset()))


def can_transition(kind: LineItemKind, from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS[kind].get(from_status, frozenset())


def ensure_transition(kind: LineItemKind, from_status: str, to_status: str) -> None:
    if not can_transition(kind, from_status, to_status):
        raise IllegalTransitionError(
            kind=kind,
            from_status=from_status,
            to_status=to_status,
            allowed=allowed_transitions(kind, from_status),
        )


def transition_path(
    kind: LineItemKind,
    from_status: str,
    to_status: str,
    avoid: Iterable[str] = (),
) -> list[str] | None:
    """
    Shortest chain of legal statuses leading from ``from_status`` to ``to_status``.

    The start status is not part of the result, so an empty list means the
    item is already there. Statuses in ``avoid`` are never entered. Returns
    None when the target cannot be reached.
    """
    avoid = frozenset(avoid)
    previous: dict[str, str] = {from_status: from_status}
    queue = deque([from_status])
    while queue:
        status = queue.popleft()
        if status == to_status:
            path = []
            while status != from_status:
                path.append(status)
                status = previous[status]
            return path[::-1]
        for next_status in sorted(TRANSITIONS[kind].get(status, frozenset())):
            if next_status in previous or next_status in avoid:
                continue
            previous[next_status] = status
            queue.append(next_status)
    return None


def is_capture_edge(kind: LineItemKind, from_status: str, to_status: str) -> bool:
    return CAPTURE_EDGES[kind] == (from_status, to_status)


def project_order_status(items: Iterable[LineItem]) -> OrderStatusEnum:
    """Derive the order status from its line items. Never stored independently."""
    items = list(items)
    if not items:
        return OrderStatusEnum.PENDING

    active = [item for item in items if item.status != "cancelled"]
    if not active:
        return OrderStatusEnum.CANCELLED

    refunded = [item for item in active if item.status in _REFUNDED]
    if refunded:
        if all(item.status == "refunded" for item in active):
            return OrderStatusEnum.REFUNDED
        return OrderStatusEnum.PARTIALLY_REFUNDED

    if all(item.status in FINISHED_STATUSES[item.kind] for item in active):
        return OrderStatusEnum.COMPLETED

    if any(item.status not in _PRE_FULFILLMENT for item in active):
        return OrderStatusEnum.PROCESSING

    if any(item.status == "payment_confirmed" for item in active):
        return OrderStatusEnum.CONFIRMED

    return OrderStatusEnum.PENDING


BOOKING_TRANSITIONS: dict[BookingStatusEnum, frozenset[BookingStatusEnum]] = {
    BookingStatusEnum.PENDING: frozenset(
        {BookingStatusEnum.CONFIRMED, BookingStatusEnum.CANCELLED}
    ),
    BookingStatusEnum.CONFIRMED: frozenset(
        {
            BookingStatusEnum.IN_PROGRESS,
            BookingStatusEnum.COMPLETED,
            BookingStatusEnum.CANCELLED,
            BookingStatusEnum.NO_SHOW,
        }
    ),
    BookingStatusEnum.IN_PROGRESS: frozenset({BookingStatusEnum.COMPLETED}),
    BookingStatusEnum.COMPLETED: frozenset(),
    BookingStatusEnum.CANCELLED: frozenset(),
    BookingStatusEnum.NO_SHOW: frozenset(),
}

CANCELLABLE_BOOKING_STATUSES = frozenset(
    {BookingStatusEnum.PENDING, BookingStatusEnum.CONFIRMED}
)

ACTIVE_BOOKING_STATUSES = frozenset(
    {
        BookingStatusEnum.PENDING,
        BookingStatusEnum.CONFIRMED,
        BookingStatusEnum.IN_PROGRESS,
    }
)


def ensure_booking_transition(
    current: BookingStatusEnum, target: BookingStatusEnum
) -> None:
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidState(f"Cannot move booking from {current} to {target}")
