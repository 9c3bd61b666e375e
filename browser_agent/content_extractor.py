"""
Content extractor for page snapshots and markdown.

Provides:
- content pattern detection (search results, article, post, list, generic)
- an extraction recommendation per pattern
- structured extraction of search results, articles and posts
- extractive summarization of long text

Pure text processing, no browser access.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from .models.schemas import SubGoal
from .utils.logger import get_logger


logger = get_logger(__name__)


class ContentPattern(str, Enum):
    """Kinds of page content the extractor recognises."""
    SEARCH_RESULTS = "search_results"
    ARTICLE_CONTENT = "article_content"
    POST_CONTENT = "post_content"
    LIST_ITEMS = "list_items"
    GENERIC = "generic"


# ============================================================================
# Constants
# ============================================================================

SUMMARY_THRESHOLD = 1000

SEARCH_ENGINE_URLS = [
    "baidu.com/s",
    "google.com/search",
    "bing.com/search",
    "duckduckgo.com",
    "yahoo.com/search",
]
ARTICLE_KEYWORDS = ["article", "author:", "published", "posted on", "by:", "read more"]
POST_KEYWORDS = ["posted", "comment", "reply", "share", "like", "timestamp", "ago", "username"]
IMPORTANT_KEYWORDS = [
    "important", "key", "significant", "critical", "essential",
    "main", "primary", "major", "fundamental", "crucial",
    "result", "conclusion", "finding", "shows", "demonstrates",
    "first", "second", "third", "finally", "therefore", "however",
]

_REF = re.compile(r"\[ref=([^\]]+)\]|\[([a-z]\d+)\]", re.IGNORECASE)
_URL = re.compile(r"(https?://\S+)")
_MARKER = re.compile(r"\[search-result\]", re.IGNORECASE)
_NODE_NAME = re.compile(r'^-\s+[\w-]+\s+"([^"]+)"')
_HTML_HEADING_3 = re.compile(r"<h[1-3][^>]*>(.+?)</h[1-3]>", re.IGNORECASE)
_HTML_HEADING_4 = re.compile(r"<h[1-4][^>]*>(.+?)</h[1-4]>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")

ARTICLE_AUTHOR_PATTERNS = [
    re.compile(r"(?:by|author|written by|posted by):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"(?:by|author)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"),
    re.compile(r"<author>([^<]+)</author>", re.IGNORECASE),
]
ARTICLE_DATE_PATTERNS = [
    re.compile(r"(?:published|posted|date):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"(\d{4}-\d{2}-\d{2})"),
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4})"),
    re.compile(r"(\w+\s+\d{1,2},\s+\d{4})"),
    re.compile(r"<time[^>]*>([^<]+)</time>", re.IGNORECASE),
]
POST_AUTHOR_PATTERNS = [
    re.compile(r"(?:by|author|posted by|username|user):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"(?:@|u/)([a-zA-Z0-9_-]+)"),
    re.compile(r"<(?:author|username)>([^<]+)</(?:author|username)>", re.IGNORECASE),
    re.compile(r"(?:by|from)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"),
]
POST_TIMESTAMP_PATTERNS = [
    re.compile(r"(\d+\s+(?:second|minute|hour|day|week|month|year)s?\s+ago)", re.IGNORECASE),
    re.compile(r"(?:posted|published|timestamp):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2})"),
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4}\s+\d{1,2}:\d{2})"),
    re.compile(r"(\d{1,2}:\d{2}\s*(?:AM|PM)?)", re.IGNORECASE),
    re.compile(r"<time[^>]*>([^<]+)</time>", re.IGNORECASE),
]

RECOMMENDATIONS = {
    ContentPattern.SEARCH_RESULTS: (
        "snapshot",
        "Search results are best extracted from a snapshot to identify all result elements "
        "with their refs. Use getText() on specific refs afterward.",
    ),
    ContentPattern.ARTICLE_CONTENT: (
        "getMarkdown",
        "Articles typically contain rich formatted content (headings, paragraphs, lists) "
        "that is best preserved in markdown format.",
    ),
    ContentPattern.POST_CONTENT: (
        "getMarkdown",
        "Post content often includes formatting, links, and structure that markdown preserves "
        "well. Good for extracting complete post information.",
    ),
    ContentPattern.LIST_ITEMS: (
        "snapshot",
        "List items are best identified from a snapshot to see the structure and refs. "
        "Extract specific items with getText() afterward.",
    ),
    ContentPattern.GENERIC: (
        "snapshot",
        "For unknown content patterns, start with a snapshot to understand the page structure "
        "before deciding on specific extraction.",
    ),
}


def _first_match(patterns: List["re.Pattern"], content: str) -> str:
    for pattern in patterns:
        match = pattern.search(content)
        if match:
            return match.group(1).strip()
    return ""


class ContentExtractor:
    """Text-only content analysis used after snapshot and markdown actions."""

    # ------------------------------------------------------------------
    # Pattern detection
    # ------------------------------------------------------------------

    def identify_pattern(self, text: Optional[str], url: str = "") -> ContentPattern:
        """
        Classify a snapshot tree or markdown document.

        Args:
            text: Snapshot tree or markdown
            url: Page URL, used to spot search engine result pages

        Returns:
            ContentPattern
        """
        if not text or not isinstance(text, str):
            return ContentPattern.GENERIC

        lower = text.lower()
        lower_url = (url or "").lower()

        has_search_url = any(pattern in lower_url for pattern in SEARCH_ENGINE_URLS)
        has_search_markers = "[search-result]" in lower or "search result" in lower
        has_many_links = len(re.findall(r"https?://", text)) > 5
        if has_search_url or (has_search_markers and has_many_links):
            return ContentPattern.SEARCH_RESULTS

        has_article_keywords = any(keyword in lower for keyword in ARTICLE_KEYWORDS)
        has_paragraphs = text.count("\n\n") > 3
        has_headings = bool(re.search(r"^#{1,3}\s", text, re.MULTILINE)) or "<h1" in lower or "<h2" in lower
        if has_article_keywords and (has_paragraphs or has_headings):
            return ContentPattern.ARTICLE_CONTENT

        post_hits = sum(1 for keyword in POST_KEYWORDS if keyword in lower)
        has_timestamp = bool(
            re.search(r"\d{1,2}:\d{2}", text)
            or re.search(r"\d{4}-\d{2}-\d{2}", text)
            or re.search(r"(minute|hour|day|week|month|year)s?\s+ago", text, re.IGNORECASE)
        )
        if post_hits >= 2 and has_timestamp:
            return ContentPattern.POST_CONTENT

        has_list_markers = "<ul" in lower or "<ol" in lower or "<li" in lower
        has_bullets = bool(re.search(r"^[*\-+]\s", text, re.MULTILINE))
        has_numbered = bool(re.search(r"^\d+\.\s", text, re.MULTILINE))
        if has_list_markers or has_bullets or has_numbered or self._has_repeated_structure(text):
            return ContentPattern.LIST_ITEMS

        return ContentPattern.GENERIC

    @staticmethod
    def _has_repeated_structure(text: str) -> bool:
        if len(re.findall(r"\[ref=\d+\]", text)) > 5:
            return True
        return len(re.findall(r"^#{2,4}\s.+$", text, re.MULTILINE)) > 3

    def recommend_action(self, pattern: ContentPattern, sub_goal: Optional[SubGoal] = None) -> Dict[str, Any]:
        """Suggest the next extraction action; sub-goal wording can override the pattern."""
        if sub_goal is not None and sub_goal.description:
            description = sub_goal.description.lower()
            if any(word in description for word in ("title", "heading", "link", "snippet")):
                return {
                    "action": "getText",
                    "reasoning": "Sub-goal requests specific elements. Use getText() with element refs "
                                 "for targeted extraction.",
                    "args": {},
                }
            if any(word in description for word in ("full content", "entire", "complete", "all text")):
                return {
                    "action": "getMarkdown",
                    "reasoning": "Sub-goal requests complete content. Use getMarkdown() to get full "
                                 "formatted content.",
                    "args": {},
                }

        try:
            key = ContentPattern(pattern)
        except ValueError:
            key = ContentPattern.GENERIC
        action, reasoning = RECOMMENDATIONS[key]
        return {"action": action, "reasoning": reasoning, "args": {}}

    # ------------------------------------------------------------------
    # Structured extraction
    # ------------------------------------------------------------------

    def extract_search_results(self, text: Optional[str], count: int = 5) -> List[Dict[str, str]]:
        """
        Pull up to `count` results out of a snapshot.

        Results start at [SEARCH-RESULT] markers when present, otherwise at
        every line carrying a ref.

        Returns:
            List of {title, snippet, link, ref}
        """
        if not text or not isinstance(text, str):
            return []

        results: List[Dict[str, str]] = []
        has_markers = "[search-result]" in text.lower()
        current: Optional[Dict[str, str]] = None

        for raw_line in text.split("\n"):
            if len(results) >= count:
                break
            line = raw_line.strip()

            if _MARKER.search(line):
                if current and current["title"]:
                    results.append(current)
                current = {"title": "", "snippet": "", "link": "", "ref": ""}
                # Snapshot lines carry the marker inline with the element
                line = _MARKER.sub("", line).strip()
                if not line:
                    continue

            ref_match = _REF.search(line)
            if not has_markers and ref_match:
                if current and current["title"]:
                    results.append(current)
                current = {"title": "", "snippet": "", "link": "", "ref": ""}

            if current is None:
                continue

            if ref_match:
                current["ref"] = ref_match.group(1) or ref_match.group(2)

            url_match = _URL.search(line)
            if url_match and not current["link"]:
                current["link"] = url_match.group(1)

            node_name = _NODE_NAME.match(line)
            text = node_name.group(1) if node_name else line
            plain = bool(text) and not text.startswith("[") and not text.startswith("http")
            if not current["title"] and plain:
                if len(text) < 200 and "..." not in text:
                    current["title"] = text
            elif current["title"] and not current["snippet"] and plain and text != current["title"]:
                current["snippet"] = text

        if current and current["title"] and len(results) < count:
            results.append(current)

        return results[:count]

    def extract_article(self, content: Optional[str]) -> Dict[str, str]:
        """Return {title, author, date, body} for an article page."""
        if not content or not isinstance(content, str):
            return {"title": "", "author": "", "date": "", "body": ""}

        lines = content.split("\n")
        title, title_index = self._find_title(lines, heading_levels=3, min_length=10)
        author = _first_match(ARTICLE_AUTHOR_PATTERNS, content)
        date = _first_match(ARTICLE_DATE_PATTERNS, content)

        body_lines = []
        for index, raw_line in enumerate(lines):
            line = raw_line.strip()
            if title_index >= 0 and index <= title_index:
                continue
            if (author and author in line) or (date and date in line):
                continue
            lower = line.lower()
            if any(word in lower for word in ("navigation", "menu", "footer", "sidebar")):
                continue
            if line:
                body_lines.append(line)

        return {"title": title, "author": author, "date": date, "body": "\n".join(body_lines).strip()}

    def extract_post(self, content: Optional[str]) -> Dict[str, str]:
        """Return {title, author, timestamp, body} for a social or forum post."""
        if not content or not isinstance(content, str):
            return {"title": "", "author": "", "timestamp": "", "body": ""}

        lines = content.split("\n")
        title, title_index = self._find_title(lines, heading_levels=4, min_length=5)
        author = _first_match(POST_AUTHOR_PATTERNS, content)
        timestamp = _first_match(POST_TIMESTAMP_PATTERNS, content)

        body_lines = []
        for index, raw_line in enumerate(lines):
            line = raw_line.strip()
            if title_index >= 0 and index <= title_index:
                continue
            if (author and author in line) or (timestamp and timestamp in line):
                continue
            lower = line.lower()
            if re.fullmatch(r"like|share|comment|reply|report|edit|delete", lower):
                continue
            if any(word in lower for word in ("navigation", "sidebar", "footer")):
                continue
            if line:
                body_lines.append(line)

        return {
            "title": title,
            "author": author,
            "timestamp": timestamp,
            "body": "\n".join(body_lines).strip(),
        }

    @staticmethod
    def _find_title(lines: List[str], heading_levels: int, min_length: int):
        heading = re.compile(r"^#{1,%d}\s+(.+)$" % heading_levels)
        html_heading = _HTML_HEADING_3 if heading_levels == 3 else _HTML_HEADING_4
        for index, raw_line in enumerate(lines):
            line = raw_line.strip()
            match = heading.match(line)
            if match:
                return match.group(1), index
            match = html_heading.search(line)
            if match:
                return _TAG.sub("", match.group(1)), index
            if min_length < len(line) < 200:
                return line, index
        return "", -1

    def extract_multiple_items(self, text: Optional[str], item_type: str, count: int = 5) -> List[Dict[str, str]]:
        """Batch extraction of results, posts or articles."""
        if not text or not isinstance(text, str) or not item_type:
            return []

        kind = item_type.lower()
        if kind in ("results", "search_results"):
            return self.extract_search_results(text, count)

        if kind in ("posts", "post_content"):
            posts = [self.extract_post(section) for section in self._split_into_sections(text)[:count]]
            return [post for post in posts if post["title"] or post["body"]]

        if kind in ("articles", "article_content"):
            articles = [self.extract_article(section) for section in self._split_into_sections(text)[:count]]
            return [article for article in articles if article["title"] or article["body"]]

        logger.debug(f"[ContentExtractor] Unsupported item type: {item_type}")
        return []

    @staticmethod
    def _split_into_sections(content: str) -> List[str]:
        if "[search-result]" in content.lower():
            parts = re.split(r"\[search-result\]", content, flags=re.IGNORECASE)
            return [part for part in parts if part.strip()]

        parts = re.split(r"\n\s*---+\s*\n|\n\n\n+", content)
        if len(parts) > 1:
            sections = [part for part in parts if len(part.strip()) > 50]
            if len(sections) > 1:
                return sections

        parts = re.split(r"\n(?=#{2,3}\s)", content)
        if len(parts) > 1:
            sections = [part for part in parts if len(part.strip()) > 50]
            if len(sections) > 1:
                return sections

        return [content]

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    def summarize(self, content: Optional[str], max_length: int = SUMMARY_THRESHOLD) -> str:
        """
        Extractive summary: first paragraph, ranked key sentences, last paragraph.

        Args:
            content: Text to summarize
            max_length: Hard upper bound on the returned length

        Returns:
            The text unchanged when it already fits, otherwise a summary
            no longer than max_length
        """
        if not content or not isinstance(content, str):
            return ""
        if len(content) <= max_length:
            return content

        first = self._first_paragraph(content)
        last = self._last_paragraph(content)
        remaining = max_length - (len(first) + len(last) + 40)

        if remaining < 100:
            half = max(0, (max_length - 30) // 2)
            head = first[:half]
            tail = last[max(0, len(last) - half):]
            result = f"{head}...\n\n[Content summarized]\n\n...{tail}"
            return self._hard_truncate(result, max_length, "\n[Content truncated]")

        middle = self._middle_content(content, first, last)
        key_sentences = self._key_sentences(middle, remaining)

        result = first
        if key_sentences and middle.strip():
            result += "\n\n[Key points from content]\n" + key_sentences
        if last:
            result += "\n\n" + last

        return self._hard_truncate(result, max_length, "\n\n[Content truncated]")

    @staticmethod
    def _hard_truncate(text: str, max_length: int, marker: str) -> str:
        if len(text) <= max_length:
            return text
        keep = max(0, max_length - len(marker))
        return text[:keep] + marker

    @staticmethod
    def _first_paragraph(content: str) -> str:
        collected: List[str] = []
        found = False
        for line in content.split("\n"):
            stripped = line.strip()
            if not found and not stripped:
                continue
            if not found and re.match(r"^#{1,6}\s", stripped):
                continue
            found = True
            collected.append(line)
            if not stripped and len(collected) > 1:
                break
            if len("\n".join(collected)) > 300:
                break
        return "\n".join(collected).strip()

    @staticmethod
    def _last_paragraph(content: str) -> str:
        collected: List[str] = []
        found = False
        for line in reversed(content.split("\n")):
            stripped = line.strip()
            lower = stripped.lower()
            if not found and not stripped:
                continue
            if lower.startswith(("footer", "copyright", "navigation")):
                continue
            found = True
            collected.insert(0, line)
            if not stripped and len(collected) > 1:
                break
            if len("\n".join(collected)) > 200:
                break
        return "\n".join(collected).strip()

    @staticmethod
    def _middle_content(content: str, first: str, last: str) -> str:
        middle = content
        if first:
            index = middle.find(first)
            if index != -1:
                middle = middle[index + len(first):]
        if last:
            index = middle.rfind(last)
            if index != -1:
                middle = middle[:index]
        return middle.strip()

    def _key_sentences(self, content: str, max_length: int) -> str:
        if not content or max_length < 50:
            return ""

        sentences = [s.strip() for s in re.split(r"[.!?]+\s+", content)]
        sentences = [s for s in sentences if len(s) > 20]
        if not sentences:
            return ""

        ranked = sorted(sentences, key=self._score_sentence, reverse=True)
        selected: List[str] = []
        used = 0
        for sentence in ranked:
            cost = len(sentence) + 2
            if used + cost > max_length:
                break
            if not self._is_redundant(sentence, selected):
                selected.append(sentence)
                used += cost

        ordered = [s for s in sentences if s in selected]
        return ". ".join(ordered) + ("." if ordered else "")

    @staticmethod
    def _score_sentence(sentence: str) -> float:
        score = min(len(sentence) / 10, 20)
        lower = sentence.lower()
        score += 5 * sum(1 for keyword in IMPORTANT_KEYWORDS if keyword in lower)
        if re.search(r"\d+", sentence):
            score += 3
        if '"' in sentence or "'" in sentence:
            score += 2
        return score

    @staticmethod
    def _is_redundant(sentence: str, selected: List[str]) -> bool:
        words = [w for w in sentence.lower().split() if len(w) > 3]
        for other in selected:
            other_words = [w for w in other.lower().split() if len(w) > 3]
            smallest = min(len(words), len(other_words))
            if smallest == 0:
                continue
            common = [w for w in words if w in other_words]
            if len(common) / smallest > 0.5:
                return True
        return False
