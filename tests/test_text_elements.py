import unittest

from utils.text_elements import build_text_elements_from_markdown
from utils.text_elements import build_text_elements_with_link
from utils.text_elements import build_text_elements_without_placeholder
from utils.text_elements import cleanup_forms
from utils.text_elements import contains_placeholder
from utils.text_elements import extract_block_text
from utils.text_elements import find_placeholder
from utils.text_elements import placeholder_forms
from utils.text_elements import text_after_placeholder
from utils.text_elements import text_field_of


PLACEHOLDER = "__OB_CONTENT_1_1abcdef__"
CLEAN = "OB_CONTENT_1_1abcdef"


class TestTextElements(unittest.TestCase):
    """Tests for block text helpers."""

    def test_placeholder_forms(self) -> None:
        """Locate and cleanup forms should cover import renderings.

        Args:
            self: Test case instance.
        """

        self.assertEqual(placeholder_forms(PLACEHOLDER), [PLACEHOLDER, f"!{CLEAN}", CLEAN])
        self.assertEqual(cleanup_forms(PLACEHOLDER), [PLACEHOLDER, f"!{CLEAN}!", f"!{CLEAN}", f"{CLEAN}!", CLEAN])

    def test_placeholder_not_matched_inside_longer_token(self) -> None:
        """Forms sharing a prefix with a longer token should not match it.

        Args:
            self: Test case instance.
        """

        self.assertFalse(contains_placeholder("OB_CONTENT_10", "__OB_CONTENT_1__"))
        self.assertFalse(contains_placeholder("!OB_CONTENT_10 tail", "__OB_CONTENT_1__"))
        self.assertTrue(contains_placeholder("OB_CONTENT_1.", "__OB_CONTENT_1__"))
        self.assertTrue(contains_placeholder("x __OB_CONTENT_1__y", "__OB_CONTENT_1__"))
        self.assertIsNone(find_placeholder("OB_CONTENT_10", "__OB_CONTENT_1__"))
        self.assertEqual(find_placeholder("a OB_CONTENT_10 OB_CONTENT_1 b", "__OB_CONTENT_1__"), (16, 28))

        elements = [{"text_run": {"content": "OB_CONTENT_10 and OB_CONTENT_1!"}}]
        result = build_text_elements_without_placeholder(elements, ["__OB_CONTENT_1__"])
        self.assertEqual(result[0]["text_run"]["content"], "OB_CONTENT_10 and ")

    def test_extract_text_from_heading_block(self) -> None:
        """Text should be joined across runs of any text bearing field.

        Args:
            self: Test case instance.
        """

        block = {
            "block_type": 4,
            "heading2": {"elements": [{"text_run": {"content": "Hello "}}, {"text_run": {"content": "world"}}]}
        }

        self.assertEqual(text_field_of(block), "heading2")
        self.assertEqual(extract_block_text(block), "Hello world")
        self.assertIsNone(text_field_of({"block_type": 27, "image": {}}))

    def test_remove_placeholder_keeps_other_runs(self) -> None:
        """Placeholder runs should vanish and surrounding runs stay.

        Args:
            self: Test case instance.
        """

        elements = [
            {"text_run": {"content": "see "}},
            {"text_run": {"content": CLEAN, "text_element_style": {"bold": True}}},
            {"text_run": {"content": f" and !{CLEAN}! done"}}
        ]

        result = build_text_elements_without_placeholder(elements, [PLACEHOLDER])

        self.assertEqual([item["text_run"]["content"] for item in result], ["see ", " and  done"])

    def test_remove_only_placeholder_leaves_empty_run(self) -> None:
        """A block holding only the placeholder should keep one empty run.

        Args:
            self: Test case instance.
        """

        result = build_text_elements_without_placeholder([{"text_run": {"content": CLEAN}}], [PLACEHOLDER])

        self.assertEqual(result, [{"text_run": {"content": ""}}])

    def test_link_replaces_placeholder_and_keeps_style(self) -> None:
        """The placeholder should become one encoded hyperlink run.

        Args:
            self: Test case instance.
        """

        elements = [{"text_run": {"content": f"Read {CLEAN} next", "text_element_style": {"italic": True}}}]

        result = build_text_elements_with_link(elements, PLACEHOLDER, "Guide", "https://feishu.cn/docx/d1")

        self.assertEqual([item["text_run"]["content"] for item in result], ["Read ", "Guide", " next"])
        link_style = result[1]["text_run"]["text_element_style"]
        self.assertTrue(link_style["italic"])
        self.assertEqual(link_style["link"]["url"], "https%3A%2F%2Ffeishu.cn%2Fdocx%2Fd1")
        self.assertNotIn("link", result[0]["text_run"]["text_element_style"])

    def test_text_after_placeholder(self) -> None:
        """Text after the first placeholder form should be returned.

        Args:
            self: Test case instance.
        """

        self.assertEqual(text_after_placeholder(f"{CLEAN}\nmore", PLACEHOLDER), "\nmore")
        self.assertEqual(text_after_placeholder("nothing", PLACEHOLDER), "")

    def test_inline_markdown(self) -> None:
        """Inline markdown should map onto styled runs.

        Args:
            self: Test case instance.
        """

        result = build_text_elements_from_markdown("a **b** `c` [d](http://x) ~~e~~ *f*")
        runs = [item["text_run"] for item in result]

        self.assertEqual([run["content"] for run in runs], ["a ", "b", " ", "c", " ", "d", " ", "e", " ", "f"])
        self.assertEqual(runs[1]["text_element_style"], {"bold": True})
        self.assertEqual(runs[3]["text_element_style"], {"inline_code": True})
        self.assertEqual(runs[5]["text_element_style"]["link"]["url"], "http%3A%2F%2Fx")
        self.assertEqual(runs[7]["text_element_style"], {"strikethrough": True})
        self.assertEqual(runs[9]["text_element_style"], {"italic": True})
        self.assertEqual(build_text_elements_from_markdown(""), [{"text_run": {"content": ""}}])


if __name__ == "__main__":
    unittest.main()
