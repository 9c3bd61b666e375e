"""
Tests for document generation
"""
from browser_agent.document_writer import (
    UTF8_BOM,
    collect_columns,
    normalize_rows,
    render_csv,
    render_html,
    write_document,
)


class TestRendering:
    """CSV and HTML rendering"""

    def test_csv_layout(self):
        csv_text = render_csv([{"title": "A", "url": "http://a"}, {"title": "B", "views": 3}])

        assert csv_text.startswith(UTF8_BOM)
        assert csv_text[1:].split("\r\n") == ["title,url,views", "A,http://a,", "B,,3", ""]

    def test_csv_quoting(self):
        csv_text = render_csv([{"text": 'say "hi", then\nleave'}])
        assert csv_text == UTF8_BOM + 'text\r\n"say ""hi"", then\nleave"\r\n'

    def test_html_table(self):
        page = render_html([{"name": "<b>x</b>"}], title="Report")

        assert page.startswith("<!DOCTYPE html>")
        assert "<h1>Report</h1>" in page
        assert '<th style="padding: 8px;">name</th>' in page
        assert "&lt;b&gt;x&lt;/b&gt;" in page

    def test_row_normalization(self):
        assert normalize_rows({"a": 1}) == [{"a": 1}]
        assert normalize_rows(["x", None]) == [{"value": "x"}]
        assert normalize_rows("nope") == []
        assert collect_columns([{"b": 1}, {"a": 2, "b": 3}]) == ["b", "a"]


class TestWriteDocument:
    """File output"""

    def test_writes_csv(self, tmp_path):
        result = write_document([{"a": 1}, {"a": 2}], "excel", "out.csv", output_dir=str(tmp_path))

        assert result["success"] is True
        assert result["item_count"] == 2
        assert result["message"] == "CSV file generated: out.csv"
        raw = (tmp_path / "out.csv").read_bytes()
        assert raw.startswith(b"\xef\xbb\xbfa\r\n1\r\n2\r\n")

    def test_writes_html_with_default_name(self, tmp_path):
        result = write_document([{"a": 1}], "word", output_dir=str(tmp_path))

        assert result["filename"] == "document.html"
        assert result["message"] == "HTML file generated: document.html"
        assert (tmp_path / "document.html").exists()

    def test_filename_cannot_escape_output_dir(self, tmp_path):
        result = write_document([], "excel", "../../evil.csv", output_dir=str(tmp_path))
        assert result["path"] == str(tmp_path / "evil.csv")

    def test_unknown_type_falls_back_to_csv(self, tmp_path):
        result = write_document([{"a": 1}], "pdf", output_dir=str(tmp_path))
        assert result["type"] == "excel"
        assert result["filename"] == "export.csv"
