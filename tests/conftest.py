"""
Shared test doubles for the browser agent.
"""
import json
from typing import Any, Dict, List, Optional

import pytest

from browser_agent.environment import BrowserEnvironment
from browser_agent.errors import LLMError


SEARCH_TREE = "\n".join(
    [
        '- searchbox "Search" [ref=e1] [in=navigation]',
        '- link "Putian travel guide" [ref=e2] [in=search-result] [SEARCH-RESULT] https://example.com/a',
        '- link "Putian history" [ref=e3] [in=search-result] [SEARCH-RESULT] https://example.com/b',
    ]
)


def reply(action: str, thought: str = "", **args: Any) -> str:
    """Serialize an LLM decision the way the model is asked to answer."""
    return json.dumps({"thought": thought or f"do {action}", "action": action, "args": args})


class FakeEnvironment(BrowserEnvironment):
    """In-memory browser. Every call is recorded as (method, args)."""

    def __init__(self, url: str = "https://www.baidu.com", tree: str = SEARCH_TREE):
        self.url = url
        self.tree = tree
        self.refs: Dict[str, Dict[str, Any]] = {
            "e1": {"role": "searchbox", "name": "Search"},
            "e2": {"role": "link", "name": "Putian travel guide", "href": "https://example.com/a"},
            "e3": {"role": "link", "name": "Putian history", "href": "https://example.com/b"},
        }
        self.text = "Putian is a city in Fujian province."
        self.markdown = "# Putian\n\nA coastal city."
        self.snapshot_fails = False
        self.click_results: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []

    async def snapshot(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls.append(("snapshot", options))
        if self.snapshot_fails:
            return {"success": False, "error": "page crashed", "tree": "", "refs": {}, "element_count": 0}
        return {"success": True, "tree": self.tree, "refs": dict(self.refs), "element_count": len(self.refs)}

    async def click(self, ref: str) -> Dict[str, Any]:
        self.calls.append(("click", ref))
        if ref in self.click_results:
            return dict(self.click_results[ref])
        if ref not in self.refs:
            return {"success": False, "error": f'Ref "{ref}" not found. Run snapshot first.'}
        return {"success": True, "message": f"Clicked @{ref}"}

    async def fill(self, ref: str, text: str) -> Dict[str, Any]:
        self.calls.append(("fill", ref, text))
        return {"success": True, "message": f'Filled "{text}" into @{ref}'}

    async def scroll(self, direction: str = "down") -> Dict[str, Any]:
        self.calls.append(("scroll", direction))
        return {"success": True, "message": f"Scrolled {direction}"}

    async def search(self, text: str) -> Dict[str, Any]:
        self.calls.append(("search", text))
        if not text:
            return {"success": False, "error": "No search text provided"}
        self.url = f"https://www.baidu.com/s?wd={text}"
        return {"success": True, "message": f'Searched for "{text}"'}

    async def navigate(self, url: str) -> Dict[str, Any]:
        self.calls.append(("navigate", url))
        self.url = url
        return {"success": True, "url": url, "title": "Page"}

    async def get_url(self) -> Dict[str, Any]:
        self.calls.append(("get_url",))
        return {"success": True, "url": self.url}

    async def get_title(self) -> Dict[str, Any]:
        self.calls.append(("get_title",))
        return {"success": True, "title": "Page"}

    async def get_text(self, ref: str) -> Dict[str, Any]:
        self.calls.append(("get_text", ref))
        return {"success": True, "text": self.text}

    async def get_markdown(self) -> Dict[str, Any]:
        self.calls.append(("get_markdown",))
        return {"success": True, "markdown": self.markdown}

    async def generate_document(self, data, doc_type="excel", filename=None) -> Dict[str, Any]:
        self.calls.append(("generate_document", data, doc_type, filename))
        return {"success": True, "type": doc_type, "filename": filename, "item_count": len(data)}

    def called(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]


class ScriptedLLM:
    """Replays canned replies; raises LLMError once the script runs out unless a default is set."""

    def __init__(self, replies: List[str], default: Optional[str] = None):
        self.replies = list(replies)
        self.default = default
        self.calls: List[List[Dict[str, str]]] = []

    async def call_llm(self, messages, temperature=None, max_tokens=None) -> str:
        self.calls.append(messages)
        if self.replies:
            item = self.replies.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.default is not None:
            return self.default
        raise LLMError("script exhausted")


@pytest.fixture
def env():
    return FakeEnvironment()
