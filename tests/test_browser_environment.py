"""
Tests for the Playwright environment's pure helpers
"""
from browser_agent.browser_environment import (
    failure,
    format_snapshot_tree,
    html_to_markdown,
    search_engine_url,
    success,
)


class TestSnapshotTree:
    """Snapshot formatting"""

    def test_line_format(self):
        tree = format_snapshot_tree(
            [
                {"ref": "e1", "role": "textbox", "name": "Search", "value": "cats"},
                {"ref": "e2", "role": "link", "name": "Cat facts", "href": "https://cats.test", "landmark": "search-result"},
                {"ref": "e3", "role": "follow-button", "name": "Follow"},
                {"ref": "e4", "role": "video-link", "name": "Funny cat", "href": "https://v.test/video/BV1"},
                {"ref": "e5", "role": "", "name": ""},
            ]
        )

        assert tree.splitlines() == [
            '- textbox "Search" [ref=e1] [value="cats"]',
            '- link "Cat facts" [ref=e2] [in=search-result] [SEARCH-RESULT] https://cats.test',
            '- follow-button "Follow" [ref=e3] [FOLLOW]',
            '- video-link "Funny cat" [ref=e4] [VIDEO] https://v.test/video/BV1',
            "- unknown [ref=e5]",
        ]

    def test_empty(self):
        assert format_snapshot_tree([]) == ""


class TestSearchEngineUrl:
    """Direct search URLs"""

    def test_known_engine(self):
        assert search_engine_url("https://www.baidu.com/", "莆田 美食") == "https://www.baidu.com/s?wd=%E8%8E%86%E7%94%B0+%E7%BE%8E%E9%A3%9F"
        assert search_engine_url("https://www.bilibili.com/", "cat") == "https://search.bilibili.com/all?keyword=cat"

    def test_unknown_site(self):
        assert search_engine_url("https://example.com", "cat") is None
        assert search_engine_url("", "cat") is None


class TestMarkdown:
    """HTML to markdown conversion"""

    def test_structure(self):
        html = """
        <html><head><style>body {}</style></head><body>
          <h1>Title</h1>
          <p>First <a href="/more">link</a></p>
          <ul><li>one</li><li>two</li></ul>
          <script>var x = 1;</script>
        </body></html>
        """
        markdown = html_to_markdown(html, base_url="https://site.test/page")

        assert markdown.startswith("# Title")
        assert "[link](https://site.test/more)" in markdown
        assert "- one" in markdown
        assert "- two" in markdown
        assert "var x" not in markdown
        assert "body {}" not in markdown

    def test_empty(self):
        assert html_to_markdown("") == ""


class TestResultHelpers:
    """Result dict helpers"""

    def test_success_and_failure(self):
        assert success(url="u") == {"success": True, "url": "u"}
        assert failure(ValueError("bad")) == {"success": False, "error": "bad"}
