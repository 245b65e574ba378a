"""
Declarative lifecycles for ledger records.

    class OrderLifecycle(StateMachine):
        initial = "OPEN"
        transitions = [
            Transition("OPEN", "FILLED"),
            Transition("OPEN", "EXPIRED", guard=_expiry_reached),
        ]

    OrderLifecycle.validate_transition(order.status, "EXPIRED", obj=order, now=now)

A machine only validates. The caller applies the new state with a
conditional UPDATE in the same transaction as any financial side-effect,
so a stale read loses the race instead of applying twice.
"""

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class Transition:
    """
    One edge. ``guard(obj, **context)`` must be truthy for the edge to be
    taken; it is skipped when no object is supplied.
    """
    from_state: str
    to_state: str
    guard: Optional[Callable] = None


class InvalidTransition(Exception):
    """No such edge from the current state."""

    def __init__(self, from_state, to_state, allowed):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        super().__init__(
            f"{from_state} -> {to_state} is not a valid transition "
            f"(allowed from {from_state}: {allowed or 'none, state is final'})"
        )


class GuardFailure(Exception):
    """The edge exists but its guard rejected the object."""

    def __init__(self, from_state, to_state, guard_name=None):
        self.from_state = from_state
        self.to_state = to_state
        self.guard_name = guard_name
        super().__init__(
            f"{from_state} -> {to_state} refused by guard {guard_name or '<anonymous>'}"
        )


class StateMachine:
    """Subclass with ``initial`` and ``transitions``; edges are indexed once."""

    initial: str = None
    transitions: list = []
    _edges: dict = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._edges = {(t.from_state, t.to_state): t for t in cls.transitions}

    @classmethod
    def get_transition(cls, from_state, to_state):
        return cls._edges.get((from_state, to_state))

    @classmethod
    def allowed_transitions(cls, from_state):
        return [to for (frm, to) in cls._edges if frm == from_state]

    @classmethod
    def is_terminal(cls, state):
        return not cls.allowed_transitions(state)

    @classmethod
    def validate_transition(cls, from_state, to_state, obj=None, **context):
        """
        Return the Transition for ``from_state -> to_state``.

        Raises InvalidTransition for a missing edge and GuardFailure when
        the guard is falsy for ``obj``.
        """
        edge = cls.get_transition(from_state, to_state)
        if edge is None:
            raise InvalidTransition(from_state, to_state,
                                    cls.allowed_transitions(from_state))
        if edge.guard is not None and obj is not None \
                and not edge.guard(obj, **context):
            raise GuardFailure(from_state, to_state,
                               getattr(edge.guard, "__name__", None))
        return edge


def _expiry_reached(order, now):
    return order.expiry_ts is not None and order.expiry_ts < now


class OrderLifecycle(StateMachine):
    """OPEN orders fill, expire or are cancelled; every other state is final."""
    initial = "OPEN"
    transitions = [
        Transition("OPEN", "FILLED"),
        Transition("OPEN", "EXPIRED", guard=_expiry_reached),
        Transition("OPEN", "CANCELLED"),
    ]


class ConnectionLifecycle(StateMachine):
    """Push connection states. Re-subscribing replaces the channel."""
    initial = "CONNECTED"
    transitions = [
        Transition("CONNECTED", "SUBSCRIBED"),
        Transition("SUBSCRIBED", "SUBSCRIBED"),
        Transition("CONNECTED", "DISCONNECTED"),
        Transition("SUBSCRIBED", "DISCONNECTED"),
    ]
