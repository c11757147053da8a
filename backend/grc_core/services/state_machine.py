"""
State-machine registry: the single table of allowed lifecycle transitions for
audits, audit requests, findings, evidence artifacts and policies.

Validation is a set-membership check on (from, to). Models expose their table
as ``TRANSITIONS`` and a ``can_transition_to`` helper built on this module.
"""
from __future__ import annotations

from grc_core.errors import InvalidTransition


class StateMachine:
    def __init__(self, entity: str, transitions: dict[str, tuple[str, ...]]):
        self.entity = entity
        self.transitions = transitions
        self.edges: frozenset[tuple[str, str]] = frozenset(
            (src, dst) for src, targets in transitions.items() for dst in targets
        )

    @property
    def states(self) -> set[str]:
        found = set(self.transitions)
        for targets in self.transitions.values():
            found.update(targets)
        return found

    def allowed_from(self, state: str) -> list[str]:
        return list(self.transitions.get(state, ()))

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self.edges

    def is_terminal(self, state: str) -> bool:
        return not self.transitions.get(state)

    def check(
        self,
        from_state: str,
        to_state: str,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        if not self.can_transition(from_state, to_state):
            raise InvalidTransition(self.entity, from_state, to_state, code=code, status_code=status_code)


AUDIT = StateMachine("audit", {
    "planning": ("fieldwork", "cancelled"),
    "fieldwork": ("reporting", "cancelled"),
    "reporting": ("remediation", "cancelled"),
    "remediation": ("completed", "cancelled"),
})

AUDIT_REQUEST = StateMachine("audit_request", {
    "open": ("in_progress", "submitted"),
    "in_progress": ("submitted",),
    "submitted": ("accepted", "rejected"),
    "rejected": ("in_progress", "submitted", "closed"),
    "accepted": ("closed",),
})

FINDING = StateMachine("audit_finding", {
    "identified": ("remediation_planned", "risk_accepted"),
    "remediation_planned": ("remediation_in_progress", "risk_accepted"),
    "remediation_in_progress": ("remediation_complete", "risk_accepted"),
    "remediation_complete": ("verified", "remediation_in_progress", "risk_accepted"),
    "verified": ("closed",),
    "risk_accepted": ("closed",),
})

EVIDENCE = StateMachine("evidence_artifact", {
    "draft": ("pending_review",),
    "pending_review": ("approved", "rejected"),
    "rejected": ("pending_review",),
    "approved": ("expired",),
    "expired": ("pending_review",),
})

# "draft" targets from approved/published are reached only by creating a new
# content version; "in_review -> approved" only by the last sign-off approval.
POLICY = StateMachine("policy", {
    "draft": ("in_review", "archived"),
    "in_review": ("approved", "draft", "archived"),
    "approved": ("in_review", "published", "draft", "archived"),
    "published": ("draft", "archived"),
})

REGISTRY: dict[str, StateMachine] = {
    m.entity: m for m in (AUDIT, AUDIT_REQUEST, FINDING, EVIDENCE, POLICY)
}

AUDIT_TERMINAL = ("completed", "cancelled")
REQUEST_CLOSED = ("accepted", "closed")
FINDING_CLOSED = ("verified", "closed", "risk_accepted")


def get_machine(entity: str) -> StateMachine:
    try:
        return REGISTRY[entity]
    except KeyError:
        raise KeyError(f"No state machine registered for '{entity}'") from None
