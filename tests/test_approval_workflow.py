"""
Tests for the approval workflow service: request creation and the
approval processing operation end to end against an in-memory store.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from approvals.config import AppConfig
from approvals.models.enums import (
    DEPARTMENT_ROLES,
    ActionType,
    ErrorKind,
    RequestStatus,
    UserRole,
)
from approvals.services import create_services
from approvals.services.approval_engine import ApprovalEngine
from approvals.services.approval_workflow import CREATE_NOTE, ApprovalWorkflowService
from tests.factories import DRAFT, HistoryBuilder, WorkflowDriver, make_user, user_for

S, R, A = RequestStatus, UserRole, ActionType


def _assert_status_matches_history(request):
    last_set = [e.new_status for e in request.history if e.new_status is not None][-1]
    assert request.status == last_set


class TestCreateRequest:

    def test_creates_in_manager_review(self, workflow):
        result = workflow.create_request(user_for(R.REQUESTER), DRAFT)

        assert result.success
        assert result.status_code == 201
        request = result.data
        assert request.status == S.MANAGER_REVIEW
        assert len(request.history) == 1
        entry = request.history[0]
        assert entry.action == A.CREATE
        assert entry.previous_status is None
        assert entry.new_status == S.MANAGER_REVIEW
        assert entry.notes == CREATE_NOTE

    def test_persisted(self, workflow, repo):
        created = workflow.create_request(user_for(R.REQUESTER), DRAFT).data
        assert repo.get_by_id(created.id) == created

    @pytest.mark.parametrize("role", [r for r in UserRole if r != R.REQUESTER])
    def test_only_requesters_create(self, workflow, role):
        result = workflow.create_request(user_for(role), DRAFT)
        assert not result.success
        assert result.error_kind == ErrorKind.UNAUTHORIZED
        assert result.status_code == 403

    def test_invalid_draft(self, workflow):
        result = workflow.create_request(user_for(R.REQUESTER), {**DRAFT, "cost_estimate": "-1"})
        assert result.error_kind == ErrorKind.INVALID_ACTION
        assert result.status_code == 400

    def test_audit_event_persisted(self, workflow, db):
        created = workflow.create_request(user_for(R.REQUESTER), DRAFT).data
        rows = db.sqlite.execute(
            "SELECT action, entity_id FROM audit_log WHERE entity_id = ?", (created.id,)
        ).fetchall()
        assert [(row["action"], row["entity_id"]) for row in rows] == [("CREATE", created.id)]

    def test_audit_persistence_can_be_disabled(self, db, clock, monkeypatch):
        monkeypatch.setenv("PERSIST_AUDIT_EVENTS", "false")
        svc = create_services(db, AppConfig(), clock=clock)["approval_workflow_service"]
        svc.create_request(user_for(R.REQUESTER), DRAFT)
        assert db.sqlite.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0] == 0


class TestScenarios:

    def test_manager_forwards_to_parallel_verification(self, driver):
        request = driver.create()
        request = driver.ok(request.id, R.INSTITUTION_MANAGER, "forward")

        assert request.status == S.PARALLEL_VERIFICATION
        assert [e.action for e in request.history] == [A.CREATE, A.FORWARD]

    def test_parallel_verification_back_to_manager(self, driver):
        request = driver.drive_to(S.PARALLEL_VERIFICATION)

        request = driver.ok(request.id, R.SOP_VERIFIER, "approve", sop_reference="SOP-123")
        assert request.status == S.SOP_COMPLETED
        assert request.sop_reference == "SOP-123"

        request = driver.ok(request.id, R.ACCOUNTANT, "approve", budget_available=True)
        assert request.status == S.MANAGER_REVIEW
        assert len(request.history) == 4

    @pytest.mark.parametrize(
        "budget_available,expected",
        [(True, S.VP_APPROVAL), (False, S.DEAN_REVIEW)],
    )
    def test_manager_routing_decision(self, driver, budget_available, expected):
        request = driver.verified()
        request = driver.ok(
            request.id, R.INSTITUTION_MANAGER, "approve", budget_available=budget_available
        )
        assert request.status == expected
        decision = request.history[-1]
        assert decision.actor_role == R.INSTITUTION_MANAGER
        assert decision.budget_available is budget_available

    def test_forward_does_not_record_budget_decision(self, driver):
        request = driver.create()
        request = driver.ok(request.id, R.INSTITUTION_MANAGER, "forward", budget_available=True)
        assert request.history[-1].budget_available is None

    def test_dean_department_clarification_round(self, driver):
        request = driver.drive_to(S.DEAN_REVIEW)

        request = driver.ok(request.id, R.DEAN, "clarify", target="hr", notes="Staffing?")
        assert request.status == S.DEPARTMENT_CHECKS
        assert request.last_entry.clarification_target == R.HR

        wrong = driver.act(request.id, user_for(R.IT), "forward")
        assert wrong.error_kind == ErrorKind.UNAUTHORIZED
        assert "hr" in wrong.error

        request = driver.ok(request.id, R.HR, "forward", notes="No new hires needed")
        assert request.status == S.DEAN_REVIEW
        assert request.last_entry.department_response == R.HR

    def test_target_is_case_insensitive(self, driver):
        request = driver.drive_to(S.DEAN_REVIEW)
        request = driver.ok(request.id, R.DEAN, "clarify", target=" HR ")
        assert request.last_entry.clarification_target == R.HR

    @pytest.mark.parametrize(
        "status",
        [
            S.MANAGER_REVIEW,
            S.PARALLEL_VERIFICATION,
            S.SOP_COMPLETED,
            S.VP_APPROVAL,
            S.HOI_APPROVAL,
            S.DEAN_REVIEW,
            S.DEPARTMENT_CHECKS,
            S.CHIEF_DIRECTOR_APPROVAL,
            S.CHAIRMAN_APPROVAL,
        ],
    )
    def test_reject_from_any_open_stage(self, driver, services, status):
        request = driver.drive_to(status)
        engine = services["engine"]
        approvers = sorted(engine.required_approvers(status))
        if status == S.DEPARTMENT_CHECKS:
            approvers = [R.HR]

        request = driver.ok(request.id, approvers[0], "reject", notes="Not justified")
        assert request.status == S.REJECTED

        for role in UserRole:
            result = driver.act(request.id, user_for(role), "approve")
            assert result.error_kind == ErrorKind.UNAUTHORIZED

    def test_full_happy_path(self, driver):
        request = driver.drive_to(S.APPROVED)
        assert request.status == S.APPROVED
        _assert_status_matches_history(request)


class TestInvariants:

    def test_status_and_append_only_history_at_every_step(self, driver):
        request = driver.create()
        steps = [
            (R.INSTITUTION_MANAGER, "forward", {}),
            (R.ACCOUNTANT, "approve", {"budget_available": False}),
            (R.SOP_VERIFIER, "approve", {"sop_not_available": True}),
            (R.INSTITUTION_MANAGER, "clarify", {"target": "accountant"}),
            (R.INSTITUTION_MANAGER, "approve", {"budget_available": False}),
            (R.DEAN, "clarify", {"target": "audit"}),
            (R.AUDIT, "forward", {}),
            (R.DEAN, "approve", {}),
            (R.CHIEF_DIRECTOR, "approve", {}),
            (R.CHAIRMAN, "approve", {}),
        ]
        for role, action, payload in steps:
            before = request
            request = driver.ok(request.id, role, action, **payload)

            _assert_status_matches_history(request)
            assert len(request.history) == len(before.history) + 1
            assert request.history[: len(before.history)] == before.history

        assert request.status == S.APPROVED

    @pytest.mark.parametrize(
        "status",
        [
            S.MANAGER_REVIEW,
            S.PARALLEL_VERIFICATION,
            S.SOP_COMPLETED,
            S.VP_APPROVAL,
            S.HOI_APPROVAL,
            S.DEAN_REVIEW,
            S.DEPARTMENT_CHECKS,
            S.CHIEF_DIRECTOR_APPROVAL,
            S.CHAIRMAN_APPROVAL,
            S.APPROVED,
            S.REJECTED,
        ],
    )
    def test_unauthorized_roles_never_append(self, driver, repo, services, status):
        request = driver.drive_to(status)
        allowed = services["engine"].required_approvers(status)

        for role in UserRole:
            if role in allowed:
                continue
            for action in ("approve", "reject", "clarify", "forward"):
                result = driver.act(request.id, user_for(role), action, target="hr")
                assert result.error_kind == ErrorKind.UNAUTHORIZED, (role, action)

        assert repo.get_by_id(request.id).history == request.history

    @pytest.mark.parametrize("sop_first", [True, False])
    def test_parallel_verification_symmetry(self, driver, sop_first):
        request = driver.verified(sop_first=sop_first)

        assert request.status == S.MANAGER_REVIEW
        verifier_entries = [
            e for e in request.history if e.actor_role in (R.SOP_VERIFIER, R.ACCOUNTANT)
        ]
        assert len(verifier_entries) == 2
        assert {e.actor_role for e in verifier_entries} == {R.SOP_VERIFIER, R.ACCOUNTANT}
        intermediates = [e.new_status for e in verifier_entries if e.new_status != S.MANAGER_REVIEW]
        assert intermediates == [S.SOP_COMPLETED if sop_first else S.BUDGET_COMPLETED]

    def test_timestamps_never_go_backwards(self, driver, clock):
        request = driver.create()
        clock.advance(-3600)
        request = driver.ok(request.id, R.INSTITUTION_MANAGER, "forward")
        assert request.history[1].timestamp == request.history[0].timestamp


class TestDepartmentGate:

    @pytest.mark.parametrize("target", sorted(DEPARTMENT_ROLES))
    def test_only_target_may_respond(self, driver, repo, target):
        request = driver.drive_to(S.DEAN_REVIEW)
        request = driver.ok(request.id, R.DEAN, "clarify", target=target.value)

        for role in DEPARTMENT_ROLES - {target}:
            result = driver.act(request.id, user_for(role), "forward")
            assert result.error_kind == ErrorKind.UNAUTHORIZED
            result = driver.act(request.id, user_for(role), "reject")
            assert result.error_kind == ErrorKind.UNAUTHORIZED
        assert repo.get_by_id(request.id).history == request.history

        request = driver.ok(request.id, target, "forward")
        assert request.status == S.DEAN_REVIEW
        assert request.last_entry.department_response == target

    def test_department_cannot_approve(self, driver):
        request = driver.drive_to(S.DEPARTMENT_CHECKS)
        result = driver.act(request.id, user_for(R.HR), "approve")
        assert result.error_kind == ErrorKind.INVALID_ACTION


class TestPayloadValidation:

    def test_unknown_action(self, driver):
        request = driver.create()
        result = driver.act(request.id, user_for(R.INSTITUTION_MANAGER), "escalate")
        assert result.error_kind == ErrorKind.INVALID_ACTION
        assert result.status_code == 400

    def test_unknown_target(self, driver):
        request = driver.drive_to(S.DEAN_REVIEW)
        result = driver.act(request.id, user_for(R.DEAN), "clarify", target="finance")
        assert result.error_kind == ErrorKind.INVALID_ACTION

    @pytest.mark.parametrize("target", [None, "sop_verifier", "chairman"])
    def test_dean_clarify_needs_department(self, driver, target):
        request = driver.drive_to(S.DEAN_REVIEW)
        result = driver.act(request.id, user_for(R.DEAN), "clarify", target=target)
        assert result.error_kind == ErrorKind.INVALID_ACTION

    def test_sop_approve_needs_reference_or_flag(self, driver):
        request = driver.drive_to(S.PARALLEL_VERIFICATION)
        result = driver.act(request.id, user_for(R.SOP_VERIFIER), "approve")
        assert result.error_kind == ErrorKind.INVALID_ACTION

        request = driver.ok(request.id, R.SOP_VERIFIER, "approve", sop_not_available=True)
        assert request.status == S.SOP_COMPLETED
        assert request.sop_reference is None

    def test_manager_cannot_route_before_verification(self, driver):
        request = driver.create()
        result = driver.act(
            request.id, user_for(R.INSTITUTION_MANAGER), "approve", budget_available=True
        )
        assert result.error_kind == ErrorKind.INVALID_ACTION

    def test_manager_routing_needs_budget_decision(self, driver):
        request = driver.verified()
        result = driver.act(request.id, user_for(R.INSTITUTION_MANAGER), "approve")
        assert result.error_kind == ErrorKind.INVALID_ACTION

    def test_action_outside_vocabulary(self, driver):
        request = driver.drive_to(S.VP_APPROVAL)
        result = driver.act(request.id, user_for(R.VP), "clarify", target="hr")
        assert result.error_kind == ErrorKind.INVALID_ACTION

    def test_invalid_payload_never_appends(self, driver, repo):
        request = driver.drive_to(S.DEAN_REVIEW)
        driver.act(request.id, user_for(R.DEAN), "clarify")
        assert repo.get_by_id(request.id).history == request.history


class TestPayloadEffects:

    def test_forward_carries_message_and_attachments(self, driver):
        request = driver.create()
        request = driver.ok(
            request.id, R.INSTITUTION_MANAGER, "forward",
            notes="Please verify", attachments=["quote.pdf"],
        )
        entry = request.last_entry
        assert entry.forwarded_message == "Please verify"
        assert entry.attachments == ("quote.pdf",)
        assert request.attachments == []

    def test_explicit_forwarded_message_wins(self, driver):
        request = driver.create()
        request = driver.ok(
            request.id, R.INSTITUTION_MANAGER, "forward",
            notes="internal", forwarded_message="For verification",
        )
        assert request.last_entry.forwarded_message == "For verification"

    def test_other_actions_append_attachments_to_request(self, driver):
        request = driver.drive_to(S.PARALLEL_VERIFICATION)
        request = driver.ok(
            request.id, R.SOP_VERIFIER, "approve",
            sop_reference="SOP-9", attachments=["sop.pdf"],
        )
        assert request.attachments == ["sop.pdf"]
        assert request.last_entry.attachments == ("sop.pdf",)

    def test_accountant_budget_trail(self, driver):
        request = driver.drive_to(S.PARALLEL_VERIFICATION)
        request = driver.ok(
            request.id, R.ACCOUNTANT, "approve",
            budget_available=True, budget_allocated="50000", budget_spent="20000.50",
        )
        entry = request.last_entry
        assert entry.budget_available is True
        assert entry.budget_balance == Decimal("29999.50")
        assert request.budget_allocated == Decimal("50000")
        assert request.budget_spent == Decimal("20000.50")
        assert request.budget_balance == Decimal("29999.50")

    def test_budget_fields_ignored_for_other_roles(self, driver):
        request = driver.drive_to(S.PARALLEL_VERIFICATION)
        request = driver.ok(
            request.id, R.SOP_VERIFIER, "approve",
            sop_reference="SOP-1", budget_allocated="100",
        )
        assert request.last_entry.budget_allocated is None
        assert request.budget_allocated == Decimal("0")

    def test_manager_clarification_keeps_status(self, driver, repo):
        request = driver.verified()
        request = driver.ok(
            request.id, R.INSTITUTION_MANAGER, "clarify",
            target="ACCOUNTANT", notes="Which budget line?",
        )
        assert request.status == S.MANAGER_REVIEW
        entry = request.last_entry
        assert entry.new_status is None
        assert entry.clarification_type == R.ACCOUNTANT
        assert entry.clarification_target is None
        assert repo.get_by_id(request.id) == request

        request = driver.ok(request.id, R.INSTITUTION_MANAGER, "approve", budget_available=True)
        assert request.status == S.VP_APPROVAL

    def test_manager_clarify_needs_verifier_target(self, driver):
        request = driver.verified()
        result = driver.act(request.id, user_for(R.INSTITUTION_MANAGER), "clarify", target="hr")
        assert result.error_kind == ErrorKind.INVALID_ACTION


class TestFailureKinds:

    def test_not_found(self, driver):
        result = driver.act("missing", user_for(R.INSTITUTION_MANAGER), "forward")
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.status_code == 404

    def test_conflict_on_stale_snapshot(self, driver, repo, monkeypatch):
        request = driver.create()
        stale = repo.get_by_id(request.id)
        driver.ok(request.id, R.INSTITUTION_MANAGER, "forward")

        monkeypatch.setattr(repo, "get_by_id", lambda _id: stale)
        result = driver.act(request.id, user_for(R.INSTITUTION_MANAGER), "forward")

        assert result.error_kind == ErrorKind.CONFLICT
        assert result.status_code == 409
        monkeypatch.undo()
        assert len(repo.get_by_id(request.id).history) == 2

    def test_no_op_transition_is_loud(self, workflow, repo, clock):
        # DEPARTMENT_CHECKS without any clarification entry
        builder = HistoryBuilder().created(S.DEPARTMENT_CHECKS)
        repo.create(builder.build("orphan"))
        driver = WorkflowDriver(workflow, clock)

        result = driver.act("orphan", user_for(R.HR), "forward")
        assert result.error_kind == ErrorKind.NO_OP_TRANSITION
        assert result.status_code == 500
        assert len(repo.get_by_id("orphan").history) == 1

    def test_unexpected_error_is_internal(self, driver, repo, monkeypatch):
        def boom(_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(repo, "get_by_id", boom)
        result = driver.act("any", user_for(R.INSTITUTION_MANAGER), "forward")
        assert result.error_kind == ErrorKind.INTERNAL
        assert result.status_code == 500


class TestLegacyFlow:

    def _service(self, repo, logger, clock, legacy):
        return ApprovalWorkflowService(
            request_repo=repo,
            logger=logger,
            engine=ApprovalEngine(include_legacy=legacy),
            clock=clock,
        )

    def test_legacy_linear_verification(self, repo, logger, clock):
        repo.create(HistoryBuilder().created(S.SOP_VERIFICATION).build("old-1"))
        driver = WorkflowDriver(self._service(repo, logger, clock, legacy=True), clock)

        request = driver.ok("old-1", R.SOP_VERIFIER, "approve", sop_reference="SOP-OLD")
        assert request.status == S.BUDGET_CHECK

        missing = driver.act("old-1", user_for(R.ACCOUNTANT), "approve")
        assert missing.error_kind == ErrorKind.INVALID_ACTION

        request = driver.ok("old-1", R.ACCOUNTANT, "approve", budget_available=False)
        assert request.status == S.DEAN_REVIEW

    def test_legacy_statuses_frozen_without_flag(self, repo, logger, clock):
        repo.create(HistoryBuilder().created(S.SOP_VERIFICATION).build("old-2"))
        driver = WorkflowDriver(self._service(repo, logger, clock, legacy=False), clock)

        result = driver.act("old-2", user_for(R.SOP_VERIFIER), "approve", sop_reference="X")
        assert result.error_kind == ErrorKind.UNAUTHORIZED


class TestActorIdentity:

    def test_entry_records_acting_user(self, driver):
        request = driver.create()
        manager = make_user(R.INSTITUTION_MANAGER, "im-42")
        result = driver.act(request.id, manager, "forward")
        assert result.data.last_entry.actor_id == "im-42"
        assert result.data.last_entry.actor_role == R.INSTITUTION_MANAGER
        assert result.data.updated_at == result.data.last_entry.timestamp
        assert result.data.last_entry.timestamp - request.created_at == timedelta(seconds=1)
