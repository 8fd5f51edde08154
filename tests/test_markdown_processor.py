import os
import re
import tempfile
import unittest

from data.models import KIND_CALLOUT
from data.models import KIND_FILE
from data.models import KIND_IMAGE
from data.models import KIND_SUB_DOCUMENT
from utils.markdown_processor import MarkdownProcessor


PLACEHOLDER_PATTERN = re.compile(r"__OB_CONTENT_\d+_\d+[0-9a-f]{6}__")


class TestMarkdownProcessor(unittest.TestCase):
    """Tests for placeholder substitution of local contents."""

    def setUp(self) -> None:
        """Create processor and local asset fixtures.

        Args:
            self: Test case instance.
        """

        self.processor = MarkdownProcessor()
        self._temp_dir = tempfile.TemporaryDirectory()
        self.base_path = self._temp_dir.name
        os.makedirs(os.path.join(self.base_path, "images"))
        for name, content in {
            "images/a.png": b"png",
            "report.pdf": b"pdf",
            "setup.md": b"# Setup\n",
            "my notes.md": b"# Notes\n"
        }.items():
            with open(os.path.join(self.base_path, name), "wb") as file:
                file.write(content)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_local_links_become_placeholders(self) -> None:
        """Images, files and sub-documents should be replaced in order.

        Args:
            self: Test case instance.
        """

        markdown = (
            "# Title\n"
            "See [Setup](setup.md) first.\n"
            "![diagram](./images/a.png)\n"
            "Download [report](report.pdf).\n"
        )

        transformed = self.processor.transform(md_text = markdown, base_path = self.base_path)

        pending = transformed.pending_contents
        self.assertEqual([item.kind for item in pending], [KIND_SUB_DOCUMENT, KIND_IMAGE, KIND_FILE])
        self.assertEqual([item.position for item in pending], [0, 1, 2])
        self.assertEqual(pending[0].display_name, "Setup")
        self.assertEqual(pending[1].display_name, "a.png")
        self.assertEqual(pending[2].display_name, "report.pdf")
        self.assertTrue(pending[1].original_path.endswith(os.path.join("images", "a.png")))
        self.assertTrue(os.path.isabs(pending[2].original_path))
        self.assertEqual(transformed.title, "Title")

        for item in pending:
            self.assertRegex(item.placeholder, PLACEHOLDER_PATTERN)
            self.assertEqual(transformed.content.count(item.placeholder), 1)
        self.assertTrue(transformed.content.startswith("# Title\nSee __OB_CONTENT_"))
        self.assertNotIn("](", transformed.content)

    def test_placeholders_are_unique(self) -> None:
        """Repeated links should get distinct placeholders.

        Args:
            self: Test case instance.
        """

        transformed = self.processor.transform(
            md_text = "![a](images/a.png) ![b](images/a.png)",
            base_path = self.base_path
        )

        placeholders = [item.placeholder for item in transformed.pending_contents]
        self.assertEqual(len(set(placeholders)), 2)

    def test_remote_and_missing_links_untouched(self) -> None:
        """Web links, anchors and missing files should stay as written.

        Args:
            self: Test case instance.
        """

        markdown = (
            "[site](https://example.com/a.png)\n"
            "[anchor](#intro)\n"
            "![gone](images/missing.png)\n"
        )

        transformed = self.processor.transform(md_text = markdown, base_path = self.base_path)

        self.assertEqual(transformed.content, markdown)
        self.assertEqual(transformed.pending_contents, [])

    def test_url_encoded_path(self) -> None:
        """Percent encoded local paths should be decoded.

        Args:
            self: Test case instance.
        """

        transformed = self.processor.transform(
            md_text = "[Notes](my%20notes.md)",
            base_path = self.base_path
        )

        self.assertEqual(transformed.pending_contents[0].kind, KIND_SUB_DOCUMENT)
        self.assertEqual(transformed.pending_contents[0].display_name, "Notes")

    def test_callout_block(self) -> None:
        """Callouts should collapse into one placeholder line.

        Args:
            self: Test case instance.
        """

        markdown = (
            "Before\n"
            "> [!tip]- Remember\n"
            "> first line\n"
            "> second **line**\n"
            "After\n"
        )

        transformed = self.processor.transform(md_text = markdown, base_path = self.base_path)

        item = transformed.pending_contents[0]
        self.assertEqual(item.kind, KIND_CALLOUT)
        self.assertEqual(item.display_name, "Remember")
        self.assertEqual(item.callout.callout_type, "tip")
        self.assertEqual(item.callout.content, "first line\nsecond **line**")
        self.assertTrue(item.callout.foldable)
        self.assertEqual(item.callout.background_color, 4)
        self.assertEqual(item.callout.emoji_id, "bulb")
        self.assertEqual(transformed.content, f"Before\n{item.placeholder}\nAfter\n")

    def test_callout_defaults(self) -> None:
        """Unknown callout types should use the default style and title.

        Args:
            self: Test case instance.
        """

        transformed = self.processor.transform(md_text = "> [!custom]\n> body", base_path = self.base_path)

        callout = transformed.pending_contents[0].callout
        self.assertEqual(callout.title, "Custom")
        self.assertEqual(callout.background_color, 5)
        self.assertEqual(callout.emoji_id, "pushpin")
        self.assertFalse(callout.foldable)

    def test_callout_inside_code_fence_kept(self) -> None:
        """Callout syntax inside fenced code should not be replaced.

        Args:
            self: Test case instance.
        """

        markdown = "```\n> [!note] literal\n```\n"

        transformed = self.processor.transform(md_text = markdown, base_path = self.base_path)

        self.assertEqual(transformed.content, markdown)
        self.assertEqual(transformed.pending_contents, [])

    def test_front_matter(self) -> None:
        """Front matter title and feishu_url should be read and stripped.

        Args:
            self: Test case instance.
        """

        markdown = (
            "---\n"
            "title: \"Guide\"\n"
            "feishu_url: https://feishu.cn/docx/d1\n"
            "---\n"
            "# Heading\n"
            "body\n"
        )

        transformed = self.processor.transform(md_text = markdown, base_path = self.base_path)

        self.assertEqual(transformed.title, "Guide")
        self.assertEqual(transformed.feishu_url, "https://feishu.cn/docx/d1")
        self.assertEqual(transformed.content, "# Heading\nbody\n")

    def test_front_matter_yaml_scalars(self) -> None:
        """Quoted, folded and commented YAML values should be read as YAML.

        Args:
            self: Test case instance.
        """

        cases = {
            "title: 'It''s done'\n": "It's done",
            "title: >\n  Folded title\n": "Folded title",
            "title: Plan # draft\n": "Plan",
            "title: 2024-01-31\n": "2024-01-31"
        }

        for front_matter, title in cases.items():
            with self.subTest(front_matter = front_matter):
                values, body = self.processor.split_front_matter(md_text = f"---\n{front_matter}---\nbody\n")
                self.assertEqual(values["title"], title)
                self.assertEqual(body, "body\n")

    def test_invalid_front_matter_ignored(self) -> None:
        """Front matter that is not a YAML mapping should yield no values.

        Args:
            self: Test case instance.
        """

        values, body = self.processor.split_front_matter(md_text = "---\ntitle: [unclosed\n---\nbody\n")
        self.assertEqual((values, body), ({}, "body\n"))

        values, body = self.processor.split_front_matter(md_text = "---\n- a\n- b\n---\nbody\n")
        self.assertEqual((values, body), ({}, "body\n"))

        transformed = self.processor.transform(md_text = "---\nfeishu_url:\n---\n# Heading\n", base_path = self.base_path)
        self.assertEqual(transformed.feishu_url, "")
        self.assertEqual(transformed.title, "Heading")

    def test_title_falls_back_to_default(self) -> None:
        """Without front matter or heading the default title should be used.

        Args:
            self: Test case instance.
        """

        transformed = self.processor.transform(md_text = "plain", base_path = self.base_path, default_title = "file")

        self.assertEqual(transformed.title, "file")
        self.assertEqual(self.processor.transform(md_text = "", base_path = self.base_path).title, "Untitled")


if __name__ == "__main__":
    unittest.main()
