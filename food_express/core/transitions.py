"""
Food Express Order Service - Order status transition table

Every legal status change is an Edge keyed by (current, target). The
lifecycle manager consults this table and nothing else; callers never decide
legality with their own conditionals.

    pending -> placed -> preparing -> ready -> picked -> delivered
       \\________\\___________\\_________\\________\\-> cancelled
"""
from dataclasses import dataclass

from food_express.core.errors import Forbidden, InvalidTransition
from food_express.models.order import ActorRole, OrderStatus


@dataclass(frozen=True)
class Edge:
    source: OrderStatus
    target: OrderStatus
    roles: frozenset[ActorRole]
    via_claim: bool = False  # only reachable through DeliveryMatcher.accept_delivery


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
NON_TERMINAL_STATUSES = frozenset(s for s in OrderStatus if s not in TERMINAL_STATUSES)

# Customers may back out until the kitchen starts working on the order.
CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PLACED})

_FORWARD_EDGES = [
    Edge(OrderStatus.PENDING, OrderStatus.PLACED, frozenset({ActorRole.SYSTEM})),
    Edge(OrderStatus.PLACED, OrderStatus.PREPARING, frozenset({ActorRole.RESTAURANT})),
    Edge(OrderStatus.PREPARING, OrderStatus.READY, frozenset({ActorRole.RESTAURANT})),
    Edge(OrderStatus.READY, OrderStatus.PICKED, frozenset({ActorRole.DRIVER}), via_claim=True),
    Edge(OrderStatus.PICKED, OrderStatus.DELIVERED, frozenset({ActorRole.DRIVER})),
]


def _cancel_edge(source: OrderStatus) -> Edge:
    roles = {ActorRole.RESTAURANT, ActorRole.ADMIN}
    if source in CUSTOMER_CANCELLABLE:
        roles.add(ActorRole.CUSTOMER)
    return Edge(source, OrderStatus.CANCELLED, frozenset(roles))


TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Edge] = {
    (edge.source, edge.target): edge
    for edge in _FORWARD_EDGES + [_cancel_edge(s) for s in NON_TERMINAL_STATUSES]
}


def require_transition(current: OrderStatus, target: OrderStatus, role: ActorRole) -> Edge:
    """Return the edge for (current, target) or raise.

    InvalidTransition if no such edge exists, Forbidden if it exists but the
    role may not drive it.
    """
    edge = TRANSITIONS.get((current, target))
    if edge is None:
        raise InvalidTransition(
            f"Cannot move order from '{current.value}' to '{target.value}'.",
            current=current.value,
            target=target.value,
        )
    if role not in edge.roles:
        raise Forbidden(
            f"Role '{role.value}' may not move an order from '{current.value}' to '{target.value}'."
        )
    return edge


def allowed_targets(current: OrderStatus, role: ActorRole) -> list[OrderStatus]:
    """Statuses the role may request next, for building action buttons."""
    return [
        edge.target
        for (source, _), edge in TRANSITIONS.items()
        if source is current and role in edge.roles and not edge.via_claim
    ]


def is_reachable(path: list[OrderStatus]) -> bool:
    """True if ``path`` starts at pending and follows table edges only."""
    if not path or path[0] is not OrderStatus.PENDING:
        return False
    return all((a, b) in TRANSITIONS for a, b in zip(path, path[1:]))
