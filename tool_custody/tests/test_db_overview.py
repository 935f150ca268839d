import contextlib
import io
import unittest

from sqlalchemy import update

from custody_fixtures import CustodyDbTestCase
from tool_custody.models.custody_models import Tool, ToolRequest
from tool_custody.scripts import db_overview
from tool_custody.services.request_workflow import approve_request


class DbOverviewTests(CustodyDbTestCase):
    def _run(self, *argv) -> tuple[int, str]:
        buffer = io.StringIO()
        with contextlib.redirect_stdout(buffer):
            code = db_overview.main(list(argv))
        return code, buffer.getvalue()

    def test_clean_database_passes_every_check(self):
        self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, request.RequestID, self.admin)

        results = db_overview.run_integrity_checks(self.engine)
        self.assertTrue(results)
        self.assertTrue(all(result.ok for result in results), results)

        code, output = self._run("--db-url", self.db_url, "--samples", "2")
        self.assertEqual(code, 0, output)
        self.assertIn("[OK] table:ToolRequests", output)
        self.assertIn("Tools: 1", output)

    def test_inconsistent_custody_state_is_reported(self):
        tool = self.make_tool("DR-001")
        request = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, request.RequestID, self.admin)
        with self.engine.begin() as conn:
            conn.execute(update(Tool.__table__).where(Tool.__table__.c.ToolID == tool.ToolID).values(CurrentHolderID=None))

        failed = {result.name for result in db_overview.run_integrity_checks(self.engine) if not result.ok}
        self.assertEqual(failed, {"tools:state_mismatch", "requests:approved_not_held_by_requester"})

        code, output = self._run("--db-url", self.db_url)
        self.assertEqual(code, 1)
        self.assertIn("[FAIL] tools:state_mismatch", output)

    def test_tool_bound_to_two_approved_requests_is_reported(self):
        tool = self.make_tool("DR-001")
        first = self.submit(self.alice, product_code="DR-001")
        approve_request(self.db, first.RequestID, self.admin)
        second = self.submit(self.bob, product_code="DR-001")
        with self.engine.begin() as conn:
            conn.execute(
                update(ToolRequest.__table__)
                .where(ToolRequest.__table__.c.RequestID == second.RequestID)
                .values(Status="approved", BoundToolID=tool.ToolID)
            )

        failed = {result.name for result in db_overview.run_integrity_checks(self.engine) if not result.ok}
        self.assertEqual(failed, {"requests:approved_sharing_tool", "requests:approved_not_held_by_requester"})

    def test_missing_url_and_missing_schema(self):
        code, output = self._run("--db-url", "")
        self.assertEqual(code, 2)
        self.assertIn("TOOL_CUSTODY_DB_URL", output)

        empty_url = self.db_url.replace("custody.db", "empty.db")
        code, output = self._run("--db-url", empty_url)
        self.assertEqual(code, 1)
        self.assertIn("[FAIL] table:Tools :: missing", output)


if __name__ == "__main__":
    unittest.main()
