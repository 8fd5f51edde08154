import os
import tempfile
import unittest

from fake_feishu import FakeFeishu
from fake_feishu import build_fake_services
from core.document_replacer import root_children
from core.exceptions import StructuralError
from data.models import KIND_IMAGE
from data.models import PendingContent


class TestRootChildren(unittest.TestCase):
    """Tests for first level block lookup."""

    def test_root_children(self) -> None:
        """Page children should be returned, a missing page rejected.

        Args:
            self: Test case instance.
        """

        blocks = [{"block_id": "d1", "block_type": 1, "children": ["a", "b"]}, {"block_id": "a", "block_type": 2}]

        self.assertEqual(root_children(blocks, "d1"), ["a", "b"])
        with self.assertRaises(StructuralError):
            root_children([{"block_id": "a", "block_type": 2}], "d1")


class TestDocumentReplacer(unittest.IsolatedAsyncioTestCase):
    """Tests for overwriting existing documents."""

    async def asyncSetUp(self) -> None:
        self.fake = FakeFeishu()
        self.services = build_fake_services(self.fake)
        self.replacer = self.services.publisher.replacer
        self.target = self.fake.create_document("old one\nold two", title = "Report")
        self.url = f"https://feishu.cn/docx/{self.target}"

    async def asyncTearDown(self) -> None:
        await self.services.aclose()

    async def test_replace_success(self) -> None:
        """Target should hold the new content and the scratch document be gone.

        Args:
            self: Test case instance.
        """

        stages = []

        result = await self.replacer.replace(
            existing_url = self.url,
            title = "Report",
            content = "# New\nbody text",
            pending_contents = [],
            progress = stages.append
        )

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.url, self.url)
        self.assertEqual(self.fake.texts(self.target), ["New", "body text"])
        self.assertEqual(list(self.fake.documents), [self.target])
        self.assertEqual(self.fake.files, {})
        self.assertTrue(any(item["file_name"] == "Report_temp" for item in self.fake.import_tasks.values()))
        self.assertEqual(stages[0], "Checking document access")
        self.assertEqual(stages[-1], "Update finished")

    async def test_replace_binds_placeholders_in_target(self) -> None:
        """Placeholders copied into the target should be bound there.

        Args:
            self: Test case instance.
        """

        with tempfile.TemporaryDirectory() as temp_dir:
            image_path = os.path.join(temp_dir, "chart.png")
            with open(image_path, "wb") as file:
                file.write(b"\x89PNG-chart")
            placeholder = "__OB_CONTENT_1700000000000_1abcdef__"

            result = await self.replacer.replace(
                existing_url = self.url,
                title = "Report",
                content = f"Intro\n{placeholder}\nOutro",
                pending_contents = [
                    PendingContent(
                        placeholder = placeholder,
                        original_path = image_path,
                        display_name = "chart.png",
                        kind = KIND_IMAGE,
                        position = 0
                    )
                ]
            )

        self.assertTrue(result.success, result.error)
        children = self.fake.children(self.target)
        self.assertEqual([item["block_type"] for item in children], [2, 27, 2, 2])
        self.assertEqual(self.fake.media[children[1]["image"]["token"]]["content"], b"\x89PNG-chart")
        self.assertNotIn("OB_CONTENT", self.fake.all_text(self.target))

    async def test_failed_copy_rolls_back(self) -> None:
        """A copy failure should restore the original blocks.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        self.fake.fail("POST", "/children", times = 3)
        stages = []

        result = await self.replacer.replace(
            existing_url = self.url,
            title = "Report",
            content = "replacement",
            pending_contents = [],
            progress = stages.append
        )

        self.assertFalse(result.success)
        self.assertTrue(result.error)
        self.assertIn("Rolling back", stages)
        self.assertEqual(self.fake.texts(self.target), ["old one", "old two"])
        self.assertEqual(list(self.fake.documents), [self.target])

    async def test_failed_import_keeps_target(self) -> None:
        """A failing scratch import should leave the target untouched.

        Args:
            self: Test case instance.
        """

        self.fake.import_plan = [{"job_status": 2, "error": "bad markdown"}]

        result = await self.replacer.replace(
            existing_url = self.url,
            title = "Report",
            content = "replacement",
            pending_contents = []
        )

        self.assertFalse(result.success)
        self.assertIn("bad markdown", result.error)
        self.assertEqual(self.fake.texts(self.target), ["old one", "old two"])
        self.assertEqual(list(self.fake.documents), [self.target])
        self.assertEqual(self.fake.files, {})

    async def test_rejected_import_task_removes_source(self) -> None:
        """A rejected import task should still clean up the uploaded source.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/drive/v1/import_tasks")

        result = await self.replacer.replace(
            existing_url = self.url,
            title = "Report",
            content = "replacement",
            pending_contents = []
        )

        self.assertFalse(result.success)
        self.assertIn("Report_temp", result.error)
        self.assertEqual(self.fake.texts(self.target), ["old one", "old two"])
        self.assertEqual(self.fake.files, {})

    async def test_divider_survives_replace(self) -> None:
        """Dividers of the new content should be copied into the target.

        Args:
            self: Test case instance.
        """

        result = await self.replacer.replace(
            existing_url = self.url,
            title = "Report",
            content = "above\n---\nbelow",
            pending_contents = []
        )

        self.assertTrue(result.success, result.error)
        self.assertEqual([item["block_type"] for item in self.fake.children(self.target)], [2, 22, 2])
        self.assertEqual(self.fake.texts(self.target), ["above", "", "below"])

    async def test_inaccessible_document(self) -> None:
        """An unreachable target should fail before any upload.

        Args:
            self: Test case instance.
        """

        result = await self.replacer.replace(
            existing_url = "https://feishu.cn/docx/missing",
            title = "Report",
            content = "x",
            pending_contents = []
        )

        self.assertFalse(result.success)
        self.assertIn("not accessible", result.error)
        self.assertEqual(self.fake.count("POST", "/medias/upload_all"), 0)


if __name__ == "__main__":
    unittest.main()
