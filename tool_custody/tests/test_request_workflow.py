import unittest

from custody_fixtures import CustodyDbTestCase
from tool_custody.services.actors import Actor
from tool_custody.services.audit_service import list_audit_entries
from tool_custody.services.errors import (
    DuplicatePendingError,
    NoStockError,
    NotApprovedError,
    NotFoundError,
    NotHolderError,
    NotOwnerError,
    NotPendingError,
    PermissionDeniedError,
    TargetUnavailableError,
    ValidationFailedError,
)
from tool_custody.services.request_workflow import (
    LOST_RACE_REASON,
    approve_request,
    cancel_request,
    get_request,
    list_requests,
    reject_request,
    return_tool,
    serialize_request,
)
from tool_custody.services.tool_registry import RELEASED_DIRECTLY_NOTE, release_tool, transfer_tool


class SubmitRequestTests(CustodyDbTestCase):
    def test_submit_by_code_records_pending_request(self):
        self.make_tool("DR-001", "Drill 10mm")
        request = self.submit(self.alice, product_code=" dr-001 ", quantity=2, notes="  ")

        self.assertEqual(request.Status, "pending")
        self.assertEqual(request.ProductCode, "DR-001")
        self.assertEqual(request.ToolName, "Drill 10mm")
        self.assertEqual(request.Quantity, 2)
        self.assertIsNone(request.ToolID)
        self.assertIsNone(request.Notes)
        self.assertEqual(request.TargetKey, "CODE:DR-001")

    def test_submit_validates_before_touching_storage(self):
        tool = self.make_tool("DR-001")
        with self.assertRaises(ValidationFailedError):
            self.submit(self.alice)
        with self.assertRaises(ValidationFailedError):
            self.submit(self.alice, tool_id=tool.ToolID, product_code="DR-001")
        with self.assertRaises(ValidationFailedError) as ctx:
            self.submit(self.alice, tool_id=tool.ToolID, purpose=" ")
        self.assertEqual(ctx.exception.field, "purpose")
        with self.assertRaises(ValidationFailedError) as ctx:
            self.submit(self.alice, product_code="DR-001", quantity=0)
        self.assertEqual(ctx.exception.field, "quantity")
        self.assertEqual(list_requests(self.db, self.admin), [])

    def test_submit_unknown_target_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.submit(self.alice, tool_id=404)
        with self.assertRaises(NotFoundError):
            self.submit(self.alice, product_code="NOPE")

    def test_submit_rejects_unavailable_target(self):
        tool = self.make_tool("DR-001")
        transfer_tool(self.db, tool.ToolID, "maintenance", self.admin)
        with self.assertRaises(TargetUnavailableError):
            self.submit(self.alice, tool_id=tool.ToolID)
        with self.assertRaises(TargetUnavailableError):
            self.submit(self.alice, product_code="DR-001")

    def test_duplicate_pending_request_is_refused_per_target(self):
        tool = self.make_tool("DR-001")
        self.submit(self.alice, tool_id=tool.ToolID)
        with self.assertRaises(DuplicatePendingError):
            self.submit(self.alice, tool_id=tool.ToolID)

        by_code = self.submit(self.alice, product_code="DR-001")
        other_user = self.submit(self.bob, tool_id=tool.ToolID)
        self.assertEqual(by_code.Status, "pending")
        self.assertEqual(other_user.Status, "pending")

    def test_cancelled_request_does_not_block_resubmission(self):
        tool = self.make_tool("DR-001")
        first = self.submit(self.alice, tool_id=tool.ToolID)
        cancel_request(self.db, first.RequestID, self.alice)
        second = self.submit(self.alice, tool_id=tool.ToolID)
        self.assertNotEqual(first.RequestID, second.RequestID)


class ApprovalFlowTests(CustodyDbTestCase):
    def test_approve_binds_tool_to_requester(self):
        tool = self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")

        approved = approve_request(self.db, request.RequestID, self.admin)
        self.assertEqual(approved.Status, "approved")
        self.assertEqual(approved.BoundToolID, tool.ToolID)
        self.assertEqual(approved.ReviewedBy, self.admin.user_id)
        self.assertIsNotNone(approved.ApprovedAt)

        held = self.reload_tool(tool.ToolID)
        self.assertTrue(held.IsInUse)
        self.assertEqual(held.CurrentHolderID, self.alice.user_id)
        self.assertEqual(held.UsageCount, 1)
        self.assertCustodyState(held)
        self.assertIn(f"Request #{request.RequestID} approved", held.History[-1].Notes)
        self.assertEqual(held.History[-1].ActorID, self.admin.user_id)

        audit_actions = [row["action"] for row in list_audit_entries(self.db, "ToolRequest", request.RequestID)]
        self.assertEqual(audit_actions, ["Submit", "Approve"])

    def test_second_approval_for_single_unit_is_auto_rejected(self):
        self.make_tool("DR-001")
        first = self.submit(self.alice, product_code="DR-001")
        second = self.submit(self.bob, product_code="DR-001")

        approve_request(self.db, first.RequestID, self.admin)
        with self.assertRaises(NoStockError):
            approve_request(self.db, second.RequestID, self.admin)

        rejected = self.reload_request(second.RequestID)
        self.assertEqual(rejected.Status, "rejected")
        self.assertEqual(rejected.RejectionReason, LOST_RACE_REASON)
        self.assertIsNone(rejected.BoundToolID)
        with self.assertRaises(TargetUnavailableError):
            self.submit(self.bob, product_code="DR-001")

    def test_approve_requires_admin_and_pending_state(self):
        self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        with self.assertRaises(PermissionDeniedError):
            approve_request(self.db, request.RequestID, self.alice)
        approve_request(self.db, request.RequestID, self.admin)
        with self.assertRaises(NotPendingError):
            approve_request(self.db, request.RequestID, self.admin)
        with self.assertRaises(NotFoundError):
            approve_request(self.db, 9999, self.admin)

    def test_reject_is_not_repeatable(self):
        self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        with self.assertRaises(ValidationFailedError):
            reject_request(self.db, request.RequestID, self.admin, "   ")

        rejected = reject_request(self.db, request.RequestID, self.admin, "Use the spare")
        self.assertEqual(rejected.Status, "rejected")
        self.assertEqual(rejected.RejectionReason, "Use the spare")
        with self.assertRaises(NotPendingError):
            reject_request(self.db, request.RequestID, self.admin, "Again")
        self.assertEqual(self.reload_request(request.RequestID).RejectionReason, "Use the spare")

    def test_return_then_rebind_same_tool(self):
        tool = self.make_tool("EM-6")
        request = self.submit(self.alice, product_code="EM-6")
        approve_request(self.db, request.RequestID, self.admin)

        returned = return_tool(self.db, request.RequestID, self.alice, "Edges worn")
        self.assertEqual(returned.Status, "returned")
        self.assertIsNotNone(returned.ReturnedAt)
        self.assertEqual(returned.ReturnNotes, "Edges worn")
        back = self.reload_tool(tool.ToolID)
        self.assertEqual(back.Location, "warehouse")
        self.assertFalse(back.IsInUse)
        self.assertEqual(back.UsageCount, 1)

        again = self.submit(self.bob, product_code="EM-6")
        rebound = approve_request(self.db, again.RequestID, self.admin)
        self.assertEqual(rebound.BoundToolID, tool.ToolID)
        self.assertEqual(self.reload_tool(tool.ToolID).UsageCount, 2)

    def test_return_requires_owner_approval_and_custody(self):
        tool = self.make_tool("EM-6")
        request = self.submit(self.alice, tool_id=tool.ToolID)
        with self.assertRaises(NotApprovedError):
            return_tool(self.db, request.RequestID, self.alice)

        approve_request(self.db, request.RequestID, self.admin)
        with self.assertRaises(NotOwnerError):
            return_tool(self.db, request.RequestID, self.bob)

        held = self.reload_tool(tool.ToolID)
        held.CurrentHolderID = self.bob.user_id
        self.db.commit()
        with self.assertRaises(NotHolderError):
            return_tool(self.db, request.RequestID, self.alice)
        self.assertEqual(self.reload_tool(tool.ToolID).CurrentHolderID, self.bob.user_id)


class CustodyOutsideWorkflowTests(CustodyDbTestCase):
    def test_direct_release_closes_bound_request(self):
        tool = self.make_tool("DR-001")
        first = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, first.RequestID, self.admin)

        release_tool(self.db, tool.ToolID, self.admin)
        closed = self.reload_request(first.RequestID)
        self.assertEqual(closed.Status, "returned")
        self.assertEqual(closed.ReturnNotes, RELEASED_DIRECTLY_NOTE)
        self.assertIsNotNone(closed.ReturnedAt)
        with self.assertRaises(NotApprovedError):
            return_tool(self.db, first.RequestID, self.alice)

        second = self.submit(self.bob, product_code="DR-001")
        rebound = approve_request(self.db, second.RequestID, self.admin)
        self.assertEqual(rebound.BoundToolID, tool.ToolID)
        approved = list_requests(self.db, self.admin, status="approved", tool_id=tool.ToolID)
        self.assertEqual([request.RequestID for request in approved], [second.RequestID])

        audit = list_audit_entries(self.db, "ToolRequest", first.RequestID)
        self.assertEqual([row["action"] for row in audit], ["Submit", "Approve", "Return"])

    def test_transfer_out_of_use_closes_bound_request(self):
        tool = self.make_tool("DR-002")
        first = self.submit(self.alice, tool_id=tool.ToolID)
        approve_request(self.db, first.RequestID, self.admin)

        moved = transfer_tool(self.db, tool.ToolID, "maintenance", self.admin)
        self.assertEqual(moved.Location, "maintenance")
        self.assertCustodyState(moved)
        closed = self.reload_request(first.RequestID)
        self.assertEqual(closed.Status, "returned")
        self.assertEqual(closed.ReturnNotes, "Tool transferred to maintenance")
        with self.assertRaises(NotApprovedError):
            return_tool(self.db, first.RequestID, self.alice)

        transfer_tool(self.db, tool.ToolID, "warehouse", self.admin)
        second = self.submit(self.bob, tool_id=tool.ToolID)
        approve_request(self.db, second.RequestID, self.admin)
        approved = list_requests(self.db, self.admin, status="approved", tool_id=tool.ToolID)
        self.assertEqual([request.RequestID for request in approved], [second.RequestID])
        self.assertEqual(self.reload_tool(tool.ToolID).CurrentHolderID, self.bob.user_id)

    def test_approval_skips_tool_still_bound_to_approved_request(self):
        first_tool = self.make_tool("DR-001")
        spare = self.make_tool("DR-001-B")
        carol = Actor(user_id=103)
        first = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, first.RequestID, self.admin)

        # a row left free while its request is still approved
        stale = self.reload_tool(first_tool.ToolID)
        stale.IsInUse = False
        stale.CurrentHolderID = None
        stale.Location = "warehouse"
        self.db.commit()

        by_code = self.submit(self.bob, product_code="DR-001")
        self.assertEqual(approve_request(self.db, by_code.RequestID, self.admin).BoundToolID, spare.ToolID)

        by_tool = self.submit(carol, tool_id=first_tool.ToolID)
        with self.assertRaises(NoStockError):
            approve_request(self.db, by_tool.RequestID, self.admin)
        rejected = self.reload_request(by_tool.RequestID)
        self.assertEqual(rejected.Status, "rejected")
        self.assertEqual(rejected.RejectionReason, LOST_RACE_REASON)
        approved = list_requests(self.db, self.admin, status="approved", tool_id=first_tool.ToolID)
        self.assertEqual([request.RequestID for request in approved], [first.RequestID])


class CancelAndReadTests(CustodyDbTestCase):
    def test_cancel_pending_but_not_approved(self):
        self.make_tool("DR-001")
        self.make_tool("EM-6")
        pending = self.submit(self.alice, product_code="DR-001")
        approved = self.submit(self.alice, product_code="EM-6")
        approve_request(self.db, approved.RequestID, self.admin)

        cancelled = cancel_request(self.db, pending.RequestID, self.alice)
        self.assertEqual(cancelled.Status, "cancelled")
        with self.assertRaises(NotPendingError):
            cancel_request(self.db, approved.RequestID, self.alice)

    def test_only_requester_may_cancel(self):
        self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        with self.assertRaises(NotOwnerError):
            cancel_request(self.db, request.RequestID, self.bob)
        with self.assertRaises(NotOwnerError):
            cancel_request(self.db, request.RequestID, self.admin)

    def test_visibility_of_requests(self):
        self.make_tool("DR-001")
        mine = self.submit(self.alice, product_code="DR-001")
        theirs = self.submit(self.bob, product_code="DR-001")

        self.assertEqual([r.RequestID for r in list_requests(self.db, self.alice)], [mine.RequestID])
        self.assertEqual(len(list_requests(self.db, self.admin)), 2)
        self.assertEqual(
            [r.RequestID for r in list_requests(self.db, self.admin, user_id=self.bob.user_id)],
            [theirs.RequestID],
        )
        with self.assertRaises(NotOwnerError):
            get_request(self.db, theirs.RequestID, self.alice)
        self.assertEqual(get_request(self.db, theirs.RequestID, self.admin).RequestID, theirs.RequestID)
        with self.assertRaises(ValidationFailedError):
            list_requests(self.db, self.admin, status="archived")

    def test_serialize_request_includes_bound_tool(self):
        tool = self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, request.RequestID, self.admin)

        payload = serialize_request(self.reload_request(request.RequestID))
        self.assertEqual(payload["status"], "approved")
        self.assertEqual(payload["boundTool"]["toolID"], tool.ToolID)
        self.assertTrue(payload["boundTool"]["isInUse"])


if __name__ == "__main__":
    unittest.main()
