"""Unit tests: transition tables of the state-machine registry."""
import pytest

from grc_core.errors import InvalidTransition
from grc_core.services.state_machine import (
    AUDIT,
    AUDIT_REQUEST,
    EVIDENCE,
    FINDING,
    POLICY,
    REGISTRY,
    get_machine,
)


def test_registry_holds_every_entity():
    assert set(REGISTRY) == {"audit", "audit_request", "audit_finding", "evidence_artifact", "policy"}
    assert get_machine("policy") is POLICY
    with pytest.raises(KeyError):
        get_machine("vendor")


@pytest.mark.parametrize("src,dst", [
    ("planning", "fieldwork"),
    ("fieldwork", "reporting"),
    ("reporting", "remediation"),
    ("remediation", "completed"),
    ("planning", "cancelled"),
    ("remediation", "cancelled"),
])
def test_audit_allowed(src, dst):
    assert AUDIT.can_transition(src, dst)


@pytest.mark.parametrize("src,dst", [
    ("planning", "completed"),
    ("fieldwork", "planning"),
    ("completed", "cancelled"),
    ("cancelled", "planning"),
])
def test_audit_rejected(src, dst):
    assert not AUDIT.can_transition(src, dst)


def test_audit_terminal_states():
    assert AUDIT.is_terminal("completed")
    assert AUDIT.is_terminal("cancelled")
    assert not AUDIT.is_terminal("planning")


def test_request_machine():
    assert AUDIT_REQUEST.can_transition("open", "in_progress")
    assert AUDIT_REQUEST.can_transition("submitted", "rejected")
    assert AUDIT_REQUEST.can_transition("rejected", "in_progress")
    assert AUDIT_REQUEST.can_transition("accepted", "closed")
    assert not AUDIT_REQUEST.can_transition("open", "accepted")
    assert not AUDIT_REQUEST.can_transition("closed", "open")


def test_finding_machine():
    for state in ("identified", "remediation_planned", "remediation_in_progress", "remediation_complete"):
        assert FINDING.can_transition(state, "risk_accepted")
    assert FINDING.can_transition("remediation_complete", "remediation_in_progress")
    assert not FINDING.can_transition("identified", "verified")
    assert not FINDING.can_transition("closed", "identified")


def test_evidence_machine():
    assert EVIDENCE.allowed_from("pending_review") == ["approved", "rejected"]
    assert EVIDENCE.can_transition("approved", "expired")
    assert EVIDENCE.can_transition("expired", "pending_review")
    assert not EVIDENCE.can_transition("draft", "approved")
    assert not EVIDENCE.can_transition("superseded", "draft")


def test_policy_machine():
    assert POLICY.can_transition("draft", "in_review")
    assert POLICY.can_transition("approved", "published")
    assert POLICY.can_transition("published", "archived")
    assert not POLICY.can_transition("draft", "published")
    assert not POLICY.can_transition("archived", "draft")
    assert "archived" in POLICY.states


def test_check_names_both_states():
    with pytest.raises(InvalidTransition) as exc:
        POLICY.check("draft", "published")
    err = exc.value
    assert err.status_code == 400
    assert err.code == "INVALID_STATUS_TRANSITION"
    assert "'draft'" in err.message and "'published'" in err.message


def test_check_custom_code_and_status():
    with pytest.raises(InvalidTransition) as exc:
        AUDIT.check("completed", "planning", code="AUDIT_INVALID_TRANSITION", status_code=409)
    assert exc.value.code == "AUDIT_INVALID_TRANSITION"
    assert exc.value.status_code == 409
