import os
import tempfile
import threading
import unittest
from datetime import date

from sqlalchemy.exc import IntegrityError

from lending_fixtures import (
    RETURN_DATE,
    USE_DATE,
    add_admin,
    add_tool,
    add_user,
    audit_actions,
    count_rows,
    make_storage,
)
from tool_lending.models.lending_models import (
    APPROVED,
    AuditLog,
    CANCELLED,
    LOAN_ACTIVE,
    LOAN_RETURNED,
    PENDING,
    REJECTED,
    ROLE_USER,
    TOOL_AVAILABLE,
    TOOL_DECOMMISSIONED,
    TOOL_LOANED,
    TOOL_MAINTENANCE,
    Loan,
    LoanRequest,
    Tool,
    ToolReturn,
)
from tool_lending.schemas.lending import CreateLoanDto, CreateRequestDto, SubmitReturnDto
from tool_lending.schemas.tools import ToolCreate, ToolUpdate
from tool_lending.services import loan_service, request_service, return_service, tool_service
from tool_lending.services.errors import AccessDenied, NotFound, StateConflict, ValidationFailed


class WorkflowTestCase(unittest.TestCase):
    def setUp(self):
        self.storage = make_storage()
        self.db = self.storage.session()
        self.admin = add_admin(self.db)
        self.user = add_user(self.db, "ana@example.com")
        self.other = add_user(self.db, "luis@example.com")
        self.tool = add_tool(self.db, "QR-001")

    def tearDown(self):
        self.db.close()
        self.storage.dispose()

    def fresh_session(self):
        return self.storage.session()

    def request_tool(self, user=None, tool=None):
        payload = CreateRequestDto(
            toolID=(tool or self.tool).ToolID,
            useDate=USE_DATE,
            returnDate=RETURN_DATE,
            reason="Workshop",
        )
        return request_service.create_request(self.db, (user or self.user).UserID, payload)

    def lend_tool(self):
        request = self.request_tool()
        return request_service.approve_request(self.db, request.RequestID, self.admin.UserID, "ok")

    def submit(self, loan, tool=None, condition="good"):
        payload = SubmitReturnDto(
            loanID=loan.LoanID,
            toolID=(tool or self.tool).ToolID,
            condition=condition,
            notes="all parts included",
        )
        return return_service.submit_return(self.db, self.user.UserID, payload)


class RequestLifecycleTests(WorkflowTestCase):
    def test_full_request_loan_return_scenario(self):
        request = self.request_tool()
        self.assertEqual(request.Status, PENDING)

        loan = request_service.approve_request(self.db, request.RequestID, self.admin.UserID, None)
        self.assertEqual(loan.Status, LOAN_ACTIVE)
        self.assertEqual(loan.LoanDate, USE_DATE)
        self.assertEqual(loan.EstimatedReturnDate, RETURN_DATE)
        self.assertEqual(loan.RequestID, request.RequestID)

        check = self.fresh_session()
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_LOANED)
        self.assertEqual(check.get(LoanRequest, request.RequestID).Status, APPROVED)
        check.close()

        entry = self.submit(loan)
        self.assertEqual(entry.Status, PENDING)
        self.assertIsNotNone(entry.SubmittedAt)

        approved = return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_AVAILABLE, "fine")
        self.assertEqual(approved.Status, APPROVED)
        self.assertEqual(approved.NewToolStatus, TOOL_AVAILABLE)

        check = self.fresh_session()
        closed = check.get(Loan, loan.LoanID)
        self.assertEqual(closed.Status, LOAN_RETURNED)
        self.assertIsNotNone(closed.ActualReturnDate)
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_AVAILABLE)
        check.close()

        self.assertEqual(audit_actions(self.db), ["approve_request", "approve_return"])

    def test_duplicate_pending_request_is_refused(self):
        self.request_tool()
        with self.assertRaises(StateConflict):
            self.request_tool()
        self.assertEqual(count_rows(self.db, LoanRequest), 1)

        # Another user may still ask for the same tool.
        self.request_tool(user=self.other)
        self.assertEqual(count_rows(self.db, LoanRequest), 2)

    def test_request_for_missing_tool_is_not_found(self):
        payload = CreateRequestDto(toolID=999, useDate=USE_DATE, returnDate=RETURN_DATE)
        with self.assertRaises(NotFound):
            request_service.create_request(self.db, self.user.UserID, payload)

    def test_request_dates_must_be_ordered(self):
        payload = CreateRequestDto(toolID=self.tool.ToolID, useDate=RETURN_DATE, returnDate=USE_DATE)
        with self.assertRaises(ValidationFailed):
            request_service.create_request(self.db, self.user.UserID, payload)
        self.assertEqual(count_rows(self.db, LoanRequest), 0)

    def test_approving_when_tool_not_available_changes_nothing(self):
        request = self.request_tool()
        self.tool.Status = TOOL_MAINTENANCE
        self.db.commit()

        with self.assertRaises(StateConflict) as ctx:
            request_service.approve_request(self.db, request.RequestID, self.admin.UserID, None)
        self.assertIn(TOOL_MAINTENANCE, ctx.exception.message)

        check = self.fresh_session()
        self.assertEqual(check.get(LoanRequest, request.RequestID).Status, PENDING)
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_MAINTENANCE)
        self.assertEqual(count_rows(check, Loan), 0)
        self.assertEqual(count_rows(check, AuditLog), 0)
        check.close()

    def test_second_approval_is_a_state_conflict_without_duplicates(self):
        request = self.request_tool()
        request_service.approve_request(self.db, request.RequestID, self.admin.UserID, None)

        with self.assertRaises(StateConflict):
            request_service.approve_request(self.db, request.RequestID, self.admin.UserID, None)

        self.assertEqual(count_rows(self.db, Loan), 1)
        self.assertEqual(audit_actions(self.db), ["approve_request"])

    def test_competing_requests_only_one_gets_the_tool(self):
        first = self.request_tool()
        second = self.request_tool(user=self.other)
        request_service.approve_request(self.db, first.RequestID, self.admin.UserID, None)

        with self.assertRaises(StateConflict):
            request_service.approve_request(self.db, second.RequestID, self.admin.UserID, None)
        self.assertEqual(count_rows(self.db, Loan, Loan.Status == LOAN_ACTIVE), 1)

    def test_reject_requires_comment(self):
        request = self.request_tool()
        with self.assertRaises(ValidationFailed):
            request_service.reject_request(self.db, request.RequestID, self.admin.UserID, "  ")

        rejected = request_service.reject_request(self.db, request.RequestID, self.admin.UserID, "Broken blade")
        self.assertEqual(rejected.Status, REJECTED)
        self.assertEqual(rejected.AdminComment, "Broken blade")
        self.assertEqual(audit_actions(self.db), ["reject_request"])

    def test_cancel_only_by_owner_and_only_when_pending(self):
        request = self.request_tool()
        with self.assertRaises(AccessDenied):
            request_service.cancel_request(self.db, request.RequestID, self.other.UserID)

        cancelled = request_service.cancel_request(self.db, request.RequestID, self.user.UserID)
        self.assertEqual(cancelled.Status, CANCELLED)

        with self.assertRaises(StateConflict):
            request_service.cancel_request(self.db, request.RequestID, self.user.UserID)

    def test_status_filter_rejects_unknown_values(self):
        self.request_tool()
        self.assertEqual(len(request_service.list_requests(self.db, PENDING)), 1)
        self.assertEqual(len(request_service.list_requests(self.db, APPROVED)), 0)
        with self.assertRaises(ValidationFailed):
            request_service.list_requests(self.db, "sideways")


class ConcurrentApprovalTests(unittest.TestCase):
    """Two admins approving requests for one tool from separate sessions."""

    def setUp(self):
        self.workdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.workdir.name, "lending.db")
        self.storage = make_storage(f"sqlite+pysqlite:///{db_path}")
        seed = self.storage.session()
        self.admin_id = add_admin(seed).UserID
        self.tool_id = add_tool(seed, "QR-RACE").ToolID
        self.request_ids = []
        for email in ("ana@example.com", "luis@example.com"):
            user = add_user(seed, email)
            payload = CreateRequestDto(toolID=self.tool_id, useDate=USE_DATE, returnDate=RETURN_DATE)
            self.request_ids.append(request_service.create_request(seed, user.UserID, payload).RequestID)
        seed.close()

    def tearDown(self):
        self.storage.dispose()
        self.workdir.cleanup()

    def test_interleaved_approvals_leave_one_active_loan(self):
        barrier = threading.Barrier(2, timeout=10)
        original_lock_tool = tool_service.lock_tool
        outcomes = {}

        def lock_then_wait(db, tool_id):
            tool = original_lock_tool(db, tool_id)
            barrier.wait()
            return tool

        def approve(request_id):
            db = self.storage.session()
            try:
                request_service.approve_request(db, request_id, self.admin_id)
                outcomes[request_id] = "approved"
            except StateConflict as exc:
                outcomes[request_id] = exc.message
            except Exception as exc:
                outcomes[request_id] = type(exc).__name__
            finally:
                db.close()

        tool_service.lock_tool = lock_then_wait
        try:
            workers = [threading.Thread(target=approve, args=(rid,)) for rid in self.request_ids]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(timeout=30)
        finally:
            tool_service.lock_tool = original_lock_tool

        results = sorted(outcomes.values())
        self.assertEqual(results, ["The tool is no longer available. Current state: loaned", "approved"])

        check = self.storage.session()
        self.assertEqual(count_rows(check, Loan, Loan.Status == LOAN_ACTIVE), 1)
        self.assertEqual(check.get(Tool, self.tool_id).Status, TOOL_LOANED)
        self.assertEqual(count_rows(check, LoanRequest, LoanRequest.Status == APPROVED), 1)
        self.assertEqual(count_rows(check, LoanRequest, LoanRequest.Status == PENDING), 1)
        self.assertEqual(audit_actions(check), ["approve_request"])
        check.close()


class ReturnLedgerTests(WorkflowTestCase):
    def test_scan_code_mismatch_creates_no_return(self):
        loan = self.lend_tool()
        wrong = add_tool(self.db, "QR-999")

        with self.assertRaises(StateConflict):
            self.submit(loan, tool=wrong)
        self.assertEqual(count_rows(self.db, ToolReturn), 0)

    def test_submit_requires_own_active_loan(self):
        loan = self.lend_tool()
        payload = SubmitReturnDto(loanID=loan.LoanID, toolID=self.tool.ToolID, condition="good")
        with self.assertRaises(NotFound):
            return_service.submit_return(self.db, self.other.UserID, payload)

    def test_only_one_pending_return_per_loan(self):
        loan = self.lend_tool()
        self.submit(loan)
        with self.assertRaises(StateConflict):
            self.submit(loan)
        self.assertEqual(count_rows(self.db, ToolReturn), 1)

    def test_approve_rejects_unknown_tool_state(self):
        loan = self.lend_tool()
        entry = self.submit(loan)
        with self.assertRaises(ValidationFailed):
            return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_LOANED)
        self.assertEqual(self.fresh_session().get(ToolReturn, entry.ReturnID).Status, PENDING)

    def test_approve_can_send_tool_to_maintenance(self):
        loan = self.lend_tool()
        entry = self.submit(loan, condition="damaged")
        return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_MAINTENANCE, "needs repair")

        check = self.fresh_session()
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_MAINTENANCE)
        self.assertEqual(check.get(Loan, loan.LoanID).Status, LOAN_RETURNED)
        check.close()

        # Maintenance is terminal for lending.
        with self.assertRaises(StateConflict):
            self.lend_tool()

    def test_forced_failure_during_approval_rolls_everything_back(self):
        loan = self.lend_tool()
        entry = self.submit(loan)
        history_before = count_rows(self.db, AuditLog)

        original_transition = tool_service.transition_tool

        def failing_transition(db, tool, new_state):
            raise RuntimeError("store went away")

        tool_service.transition_tool = failing_transition
        try:
            with self.assertRaises(RuntimeError):
                return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_AVAILABLE)
        finally:
            tool_service.transition_tool = original_transition

        check = self.fresh_session()
        self.assertEqual(check.get(ToolReturn, entry.ReturnID).Status, PENDING)
        restored = check.get(Loan, loan.LoanID)
        self.assertEqual(restored.Status, LOAN_ACTIVE)
        self.assertIsNone(restored.ActualReturnDate)
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_LOANED)
        self.assertEqual(count_rows(check, AuditLog), history_before)
        check.close()

        # The same submission can still be approved afterwards.
        return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_AVAILABLE)
        self.assertEqual(self.fresh_session().get(Tool, self.tool.ToolID).Status, TOOL_AVAILABLE)

    def test_rejection_keeps_loan_active_and_is_not_repeatable(self):
        loan = self.lend_tool()
        entry = self.submit(loan)

        with self.assertRaises(ValidationFailed):
            return_service.reject_return(self.db, entry.ReturnID, self.admin.UserID, None)

        return_service.reject_return(self.db, entry.ReturnID, self.admin.UserID, "Missing battery")
        with self.assertRaises(StateConflict):
            return_service.reject_return(self.db, entry.ReturnID, self.admin.UserID, "Missing battery")

        check = self.fresh_session()
        self.assertEqual(check.get(ToolReturn, entry.ReturnID).Status, REJECTED)
        self.assertEqual(check.get(Loan, loan.LoanID).Status, LOAN_ACTIVE)
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_LOANED)
        check.close()
        self.assertEqual(audit_actions(self.db).count("reject_return"), 1)

        # A fresh submission is allowed once the previous one is closed.
        self.assertEqual(self.submit(loan).Status, PENDING)


class DirectLoanTests(WorkflowTestCase):
    def test_direct_loan_and_legacy_return(self):
        payload = CreateLoanDto(toolID=self.tool.ToolID, returnDate=date(2030, 1, 10), notes="site visit")
        loan = loan_service.create_direct_loan(self.db, self.user.UserID, payload)
        self.assertEqual(loan.Status, LOAN_ACTIVE)
        self.assertIsNone(loan.RequestID)
        self.assertEqual(self.fresh_session().get(Tool, self.tool.ToolID).Status, TOOL_LOANED)

        with self.assertRaises(StateConflict):
            loan_service.create_direct_loan(self.db, self.other.UserID, payload)

        with self.assertRaises(AccessDenied):
            loan_service.return_loan_direct(self.db, loan.LoanID, self.other.UserID, ROLE_USER, None)

        returned = loan_service.return_loan_direct(self.db, loan.LoanID, self.user.UserID, ROLE_USER, "done")
        self.assertEqual(returned.Status, LOAN_RETURNED)
        self.assertIn("done", returned.Notes)
        self.assertEqual(self.fresh_session().get(Tool, self.tool.ToolID).Status, TOOL_AVAILABLE)

        with self.assertRaises(StateConflict):
            loan_service.return_loan_direct(self.db, loan.LoanID, self.user.UserID, ROLE_USER, None)
        self.assertEqual(audit_actions(self.db), ["create_loan", "return_loan_direct"])

    def test_active_loan_lookup_by_scan_code(self):
        loan = self.lend_tool()
        found = loan_service.find_active_loan_by_scan_code(self.db, "QR-001", self.user.UserID)
        self.assertEqual(found.LoanID, loan.LoanID)
        with self.assertRaises(NotFound):
            loan_service.find_active_loan_by_scan_code(self.db, "QR-001", self.other.UserID)

    def test_database_refuses_a_second_active_loan_for_a_tool(self):
        self.db.add(Loan(UserID=self.user.UserID, ToolID=self.tool.ToolID, Status=LOAN_ACTIVE,
                         LoanDate=USE_DATE, EstimatedReturnDate=RETURN_DATE))
        self.db.commit()
        self.db.add(Loan(UserID=self.other.UserID, ToolID=self.tool.ToolID, Status=LOAN_ACTIVE,
                         LoanDate=USE_DATE, EstimatedReturnDate=RETURN_DATE))
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

    def test_direct_loan_racing_an_unrecorded_loan_is_a_state_conflict(self):
        # An active loan row exists while the tool still reads as available.
        self.db.add(Loan(UserID=self.other.UserID, ToolID=self.tool.ToolID, Status=LOAN_ACTIVE,
                         LoanDate=USE_DATE, EstimatedReturnDate=RETURN_DATE))
        self.db.commit()

        payload = CreateLoanDto(toolID=self.tool.ToolID, returnDate=date(2030, 1, 10))
        with self.assertRaises(StateConflict) as ctx:
            loan_service.create_direct_loan(self.db, self.user.UserID, payload)
        self.assertIn(TOOL_LOANED, ctx.exception.message)

        check = self.fresh_session()
        self.assertEqual(count_rows(check, Loan), 1)
        self.assertEqual(check.get(Tool, self.tool.ToolID).Status, TOOL_AVAILABLE)
        self.assertEqual(count_rows(check, AuditLog), 0)
        check.close()


class ToolRegistryTests(WorkflowTestCase):
    def test_loaned_tool_cannot_be_deleted_or_restatused(self):
        self.lend_tool()
        with self.assertRaises(StateConflict):
            tool_service.delete_tool(self.db, self.tool.ToolID, self.admin.UserID)
        with self.assertRaises(StateConflict):
            tool_service.update_tool(self.db, self.tool.ToolID, ToolUpdate(status=TOOL_AVAILABLE), self.admin.UserID)
        self.assertEqual(self.fresh_session().get(Tool, self.tool.ToolID).Status, TOOL_LOANED)

    def test_admin_update_brings_tool_back_from_maintenance(self):
        broken = add_tool(self.db, "QR-002", status=TOOL_MAINTENANCE)
        updated = tool_service.update_tool(
            self.db, broken.ToolID, ToolUpdate(status=TOOL_AVAILABLE, location="Shelf 3"), self.admin.UserID
        )
        self.assertEqual(updated.Status, TOOL_AVAILABLE)
        self.assertEqual(updated.Location, "Shelf 3")
        self.assertEqual(audit_actions(self.db), ["update_tool"])

        with self.assertRaises(ValidationFailed):
            tool_service.update_tool(self.db, broken.ToolID, ToolUpdate(status=TOOL_LOANED), self.admin.UserID)

    def test_empty_or_unchanged_update_writes_no_history(self):
        with self.assertRaises(ValidationFailed) as ctx:
            tool_service.update_tool(self.db, self.tool.ToolID, ToolUpdate(), self.admin.UserID)
        self.assertEqual(ctx.exception.message, "No fields to update")

        with self.assertRaises(ValidationFailed):
            tool_service.update_tool(self.db, self.tool.ToolID, ToolUpdate(status=TOOL_AVAILABLE), self.admin.UserID)
        self.assertEqual(audit_actions(self.db), [])

    def test_delete_keeps_history_and_removes_closed_records(self):
        loan = self.lend_tool()
        entry = self.submit(loan)
        return_service.approve_return(self.db, entry.ReturnID, self.admin.UserID, TOOL_DECOMMISSIONED)

        tool_service.delete_tool(self.db, self.tool.ToolID, self.admin.UserID)

        check = self.fresh_session()
        self.assertIsNone(check.get(Tool, self.tool.ToolID))
        self.assertEqual(count_rows(check, Loan), 0)
        self.assertEqual(count_rows(check, ToolReturn), 0)
        self.assertEqual(count_rows(check, LoanRequest), 0)
        check.close()
        self.assertEqual(audit_actions(self.db), ["approve_request", "approve_return", "delete_tool"])

    def test_duplicate_scan_code_is_refused(self):
        with self.assertRaises(ValidationFailed):
            tool_service.create_tool(self.db, ToolCreate(scanCode="QR-001", toolName="Copy"), self.admin.UserID)

    def test_history_rows_are_append_only(self):
        self.lend_tool()
        entry = self.db.query(AuditLog).first()
        entry.Details = "rewritten"
        with self.assertRaises(RuntimeError):
            self.db.flush()
        self.db.rollback()

        entry = self.db.query(AuditLog).first()
        self.db.delete(entry)
        with self.assertRaises(RuntimeError):
            self.db.flush()
        self.db.rollback()
        self.assertEqual(count_rows(self.db, AuditLog), 1)


if __name__ == "__main__":
    unittest.main()
