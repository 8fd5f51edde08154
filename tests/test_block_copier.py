import unittest

from fake_feishu import FakeFeishu
from fake_feishu import block_text
from fake_feishu import build_fake_services
from core.block_copier import BATCH_DELAY_SECONDS
from core.block_copier import BlockCopier
from core.block_copier import build_block_data_for_copy
from core.block_copier import build_copy_tree
from core.block_copier import plan_batches
from core.exceptions import ApiResponseError


def text_block(block_id: str, content: str, children: list = None) -> dict:
    return {
        "block_id": block_id,
        "block_type": 2,
        "text": {"elements": [{"text_run": {"content": content}}]},
        "children": children or []
    }


def snapshot(*blocks: dict) -> list:
    page = {
        "block_id": "src",
        "block_type": 1,
        "page": {"elements": []},
        "children": [block["block_id"] for block in blocks if not block.get("nested")]
    }
    return [page] + [{key: value for key, value in block.items() if key != "nested"} for block in blocks]


class TestBuildBlockData(unittest.TestCase):
    """Tests for copy payload mapping."""

    def test_text_and_heading_blocks_copied(self) -> None:
        """Text bearing blocks should keep their type and elements.

        Args:
            self: Test case instance.
        """

        heading = {"block_id": "h", "block_type": 4, "heading2": {"elements": [{"text_run": {"content": "T"}}]}}

        self.assertEqual(build_block_data_for_copy(heading), {"block_type": 4, "heading2": heading["heading2"]})
        self.assertIsNot(build_block_data_for_copy(heading)["heading2"], heading["heading2"])

    def test_image_keeps_geometry_only(self) -> None:
        """Images should become empty image blocks, untokenized ones skipped.

        Args:
            self: Test case instance.
        """

        image = {"block_id": "i", "block_type": 27, "image": {"token": "t", "width": 640, "height": 480}}

        self.assertEqual(
            build_block_data_for_copy(image),
            {"block_type": 27, "image": {"width": 640, "height": 480, "align": 1}}
        )
        self.assertIsNone(build_block_data_for_copy({"block_id": "e", "block_type": 27, "image": {}}))

    def test_unsupported_blocks_degrade_to_text(self) -> None:
        """Blocks carrying text in a known field should degrade to text.

        Args:
            self: Test case instance.
        """

        widget = {"block_id": "x", "block_type": 28, "text": {"elements": [{"text_run": {"content": "widget"}}]}}

        self.assertEqual(build_block_data_for_copy(widget)["block_type"], 2)
        self.assertIsNone(build_block_data_for_copy({"block_id": "p", "block_type": 1, "page": {}}))

    def test_divider_and_other_blocks_kept(self) -> None:
        """Dividers and blocks without text should keep their own type.

        Args:
            self: Test case instance.
        """

        divider = {"block_id": "d", "block_type": 22, "parent_id": "src", "divider": {}, "children": []}
        table = {
            "block_id": "t",
            "block_type": 31,
            "parent_id": "src",
            "comment_ids": ["c1"],
            "table": {"property": {"row_size": 1}}
        }

        self.assertEqual(build_block_data_for_copy(divider), {"block_type": 22, "divider": {}})
        self.assertEqual(
            build_block_data_for_copy(table),
            {"block_type": 31, "table": {"property": {"row_size": 1}}}
        )


class TestCopyTree(unittest.TestCase):
    """Tests for nested copy payloads."""

    def test_nested_tree_and_batches(self) -> None:
        """Nested children should be carried with temporary ids.

        Args:
            self: Test case instance.
        """

        blocks = snapshot(
            text_block("a", "parent", ["a1", "a2"]),
            dict(text_block("a1", "child one"), nested = True),
            dict(text_block("a2", "child two"), nested = True),
            {"block_id": "img", "block_type": 27, "image": {}, "children": []},
            text_block("b", "second")
        )

        tree = build_copy_tree(blocks)

        self.assertEqual(tree.size, 4)
        self.assertEqual(len(tree.root_ids), 2)
        first = tree.nodes[tree.root_ids[0]]
        self.assertEqual(len(first["children"]), 2)
        self.assertEqual([item["block_id"] for item in tree.descendants(tree.root_ids)][:3], [tree.root_ids[0]] + first["children"])
        self.assertEqual(plan_batches(tree, batch_size = 3), [[tree.root_ids[0]], [tree.root_ids[1]]])
        self.assertEqual(plan_batches(tree, batch_size = 10), [tree.root_ids])


class TestBlockCopier(unittest.IsolatedAsyncioTestCase):
    """Tests for copying snapshots into a remote document."""

    async def asyncSetUp(self) -> None:
        self.fake = FakeFeishu()
        self.services = build_fake_services(self.fake)
        self.copier = BlockCopier(document_service = self.services.publisher.document_service, sleep = self.fake.sleep)
        self.target = self.fake.create_document("")

    async def asyncTearDown(self) -> None:
        await self.services.aclose()

    async def test_small_tree_copied_in_one_call(self) -> None:
        """Trees within the single call limit should use one nested create.

        Args:
            self: Test case instance.
        """

        blocks = snapshot(
            text_block("a", "parent", ["a1"]),
            dict(text_block("a1", "child"), nested = True),
            text_block("b", "second")
        )

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        self.assertEqual(copied, 3)
        self.assertEqual(self.fake.count("POST", "/descendant"), 1)
        self.assertEqual(self.fake.texts(self.target), ["parent", "second"])
        parent = self.fake.children(self.target)[0]
        self.assertEqual([block_text(item) for item in self.fake.children(self.target, parent["block_id"])], ["child"])

    async def test_large_tree_copied_in_batches(self) -> None:
        """More than a thousand blocks should be copied in ordered batches.

        Args:
            self: Test case instance.
        """

        blocks = snapshot(*[text_block(f"b{index}", f"line {index}") for index in range(1500)])

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        texts = self.fake.texts(self.target)
        self.assertEqual(copied, 1500)
        self.assertEqual(self.fake.count("POST", "/descendant"), 2)
        self.assertEqual(self.fake.sleeps.count(BATCH_DELAY_SECONDS), 1)
        self.assertEqual(texts[0], "line 0")
        self.assertEqual(texts[799:801], ["line 799", "line 800"])
        self.assertEqual(texts[-1], "line 1499")

    async def test_failed_batch_falls_back_to_single_blocks(self) -> None:
        """A rejected nested create should be replayed block by block.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        blocks = snapshot(
            text_block("a", "parent", ["a1"]),
            dict(text_block("a1", "child"), nested = True),
            text_block("b", "second")
        )

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        self.assertEqual(copied, 3)
        self.assertEqual(self.fake.texts(self.target), ["parent", "second"])
        parent = self.fake.children(self.target)[0]
        self.assertEqual(len(parent["children"]), 1)
        self.assertEqual(self.fake.count("POST", "/children"), 3)

    async def test_failing_image_dropped_in_fallback(self) -> None:
        """Images failing every retry should be dropped, text kept.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        self.fake.fail(
            "POST",
            "/children",
            times = None,
            when = lambda body: body.get("children", [{}])[0].get("block_type") == 27
        )
        blocks = snapshot(
            text_block("a", "before"),
            {"block_id": "img", "block_type": 27, "image": {"token": "t1"}, "children": []},
            text_block("b", "after")
        )

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        self.assertEqual(copied, 2)
        self.assertEqual(self.fake.texts(self.target), ["before", "after"])

    async def test_rejected_unknown_block_dropped_in_fallback(self) -> None:
        """Blocks copied as is should be dropped when rejected, dividers kept.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        self.fake.fail(
            "POST",
            "/children",
            times = None,
            when = lambda body: body.get("children", [{}])[0].get("block_type") == 31
        )
        blocks = snapshot(
            text_block("a", "before"),
            {"block_id": "t", "block_type": 31, "table": {"property": {}}, "children": []},
            {"block_id": "d", "block_type": 22, "divider": {}, "children": []},
            text_block("b", "after")
        )

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        self.assertEqual(copied, 3)
        self.assertEqual([item["block_type"] for item in self.fake.children(self.target)], [2, 22, 2])

    async def test_failing_divider_dropped_in_fallback(self) -> None:
        """A divider failing every retry should be dropped, not abort the copy.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        self.fake.fail(
            "POST",
            "/children",
            times = None,
            when = lambda body: body.get("children", [{}])[0].get("block_type") == 22
        )
        blocks = snapshot(
            text_block("a", "above"),
            {"block_id": "d", "block_type": 22, "divider": {}, "children": []},
            text_block("b", "below")
        )

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = blocks)

        self.assertEqual(copied, 2)
        self.assertEqual(self.fake.texts(self.target), ["above", "below"])

    async def test_failing_text_block_is_fatal(self) -> None:
        """Non-image blocks failing every retry should abort the copy.

        Args:
            self: Test case instance.
        """

        self.fake.fail("POST", "/descendant")
        self.fake.fail("POST", "/children", times = None)

        with self.assertRaises(ApiResponseError):
            await self.copier.copy_blocks(
                target_document_id = self.target,
                blocks = snapshot(text_block("a", "only"))
            )

        self.assertEqual(self.fake.count("POST", "/children"), 3)

    async def test_empty_snapshot(self) -> None:
        """Nothing should be sent for an empty snapshot.

        Args:
            self: Test case instance.
        """

        copied = await self.copier.copy_blocks(target_document_id = self.target, blocks = snapshot())

        self.assertEqual(copied, 0)
        self.assertEqual(self.fake.calls, [])


if __name__ == "__main__":
    unittest.main()
