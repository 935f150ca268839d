import unittest

from custody_fixtures import CustodyDbTestCase
from tool_custody.services.availability_service import (
    count_available,
    describe_availability,
    is_available,
    select_available_tool,
)
from tool_custody.services.errors import NotFoundError
from tool_custody.services.request_workflow import approve_request, reject_request
from tool_custody.services.statistics_service import (
    count_requests_by_status,
    get_tool_history,
    get_tool_statistics,
    list_tools_in_use,
)
from tool_custody.services.tool_registry import claim_tool, release_tool, transfer_tool


class AvailabilityTests(CustodyDbTestCase):
    def test_family_counts_exact_code_and_suffixed_units(self):
        self.make_tool("DR-10")
        self.make_tool("DR-10-2")
        self.make_tool("DR-100")

        self.assertEqual(count_available(self.db, "DR-10"), 2)
        self.assertEqual(describe_availability(self.db, "dr-10"), {"productCode": "DR-10", "totalCount": 2, "availableCount": 2})

    def test_blocked_units_are_not_counted(self):
        first = self.make_tool("EM-6")
        second = self.make_tool("EM-6-B")
        third = self.make_tool("EM-6-C", status="unusable")
        claim_tool(self.db, first.ToolID, self.alice.user_id, None, self.admin)
        transfer_tool(self.db, second.ToolID, "maintenance", self.admin)

        self.assertEqual(count_available(self.db, "EM-6"), 0)
        self.assertIsNone(select_available_tool(self.db, "EM-6"))
        self.assertFalse(is_available(self.db, third.ToolID))

        release_tool(self.db, first.ToolID, self.admin)
        self.assertEqual(count_available(self.db, "EM-6"), 1)
        self.assertEqual(select_available_tool(self.db, "EM-6").ToolID, first.ToolID)

    def test_selection_prefers_lowest_code(self):
        self.make_tool("TAP-M8-B")
        preferred = self.make_tool("TAP-M8-A")
        self.assertEqual(select_available_tool(self.db, "TAP-M8").ToolID, preferred.ToolID)

    def test_unknown_tool_is_not_available(self):
        self.assertFalse(is_available(self.db, 9999))
        self.assertEqual(count_available(self.db, "NOPE"), 0)


class StatisticsTests(CustodyDbTestCase):
    def test_statistics_summarise_usage_and_locations(self):
        drill = self.make_tool("DR-001")
        endmill = self.make_tool("EM-6", status="old")
        self.make_tool("TAP-M8")
        claim_tool(self.db, drill.ToolID, self.alice.user_id, None, self.admin)
        release_tool(self.db, drill.ToolID, self.admin)
        claim_tool(self.db, drill.ToolID, self.bob.user_id, None, self.admin)
        claim_tool(self.db, endmill.ToolID, self.alice.user_id, None, self.admin)

        stats = get_tool_statistics(self.db)
        self.assertEqual(stats["totalTools"], 3)
        self.assertEqual(stats["toolsInUse"], 2)
        self.assertEqual(stats["byStatus"], {"new": 2, "old": 1})
        self.assertEqual(stats["byLocation"], {"in_use": 2, "warehouse": 1})
        self.assertEqual(stats["mostUsed"][0]["productCode"], "DR-001")
        self.assertEqual(stats["mostUsed"][0]["usageCount"], 2)
        self.assertEqual(stats["leastUsed"][0]["productCode"], "TAP-M8")

        in_use = list_tools_in_use(self.db)
        self.assertEqual([row["productCode"] for row in in_use], ["EM-6", "DR-001"])

    def test_history_view_is_ordered(self):
        tool = self.make_tool("DR-001")
        claim_tool(self.db, tool.ToolID, self.alice.user_id, "Job 42", self.admin)
        release_tool(self.db, tool.ToolID, self.admin)

        view = get_tool_history(self.db, tool.ToolID)
        self.assertEqual(view["totalUsage"], 1)
        self.assertEqual([entry["action"] for entry in view["history"]], ["import", "export", "import"])
        self.assertEqual(view["history"][1]["notes"], "Job 42")
        with self.assertRaises(NotFoundError):
            get_tool_history(self.db, 9999)

    def test_request_counts_by_status(self):
        tool = self.make_tool("DR-001")
        self.make_tool("EM-6")
        first = self.submit(self.alice, tool_id=tool.ToolID)
        second = self.submit(self.bob, product_code="EM-6")
        self.submit(self.bob, tool_id=tool.ToolID)
        approve_request(self.db, first.RequestID, self.admin)
        reject_request(self.db, second.RequestID, self.admin, "Not needed")

        counts = count_requests_by_status(self.db)
        self.assertEqual(counts["approved"], 1)
        self.assertEqual(counts["rejected"], 1)
        self.assertEqual(counts["pending"], 1)
        self.assertEqual(counts["returned"], 0)


if __name__ == "__main__":
    unittest.main()
