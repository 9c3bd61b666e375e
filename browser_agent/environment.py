"""
Browser environment contract consumed by the agent loop.

Every method is a coroutine returning a plain result dict:
    {"success": bool, "error": str?, ...action specific keys}

Failures come back as {"success": False, "error": ...}; implementations
do not raise for page-level problems.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class BrowserEnvironment(ABC):
    """Page-level operations the agent can perform."""

    @abstractmethod
    async def snapshot(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build a ref-annotated outline of the page.

        Returns:
            {success, tree, refs: {ref: {role, name, href}}, element_count}
        """

    @abstractmethod
    async def click(self, ref: str) -> Dict[str, Any]:
        """Click an element from the last snapshot. May return {navigate: url} for links."""

    @abstractmethod
    async def fill(self, ref: str, text: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def scroll(self, direction: str = "down") -> Dict[str, Any]:
        ...

    @abstractmethod
    async def search(self, text: str) -> Dict[str, Any]:
        """Find the page's search box, fill it and submit."""

    @abstractmethod
    async def navigate(self, url: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_url(self) -> Dict[str, Any]:
        """Returns {success, url}."""

    @abstractmethod
    async def get_title(self) -> Dict[str, Any]:
        """Returns {success, title}."""

    @abstractmethod
    async def get_text(self, ref: str) -> Dict[str, Any]:
        """Returns {success, text}."""

    @abstractmethod
    async def get_markdown(self) -> Dict[str, Any]:
        """Returns {success, markdown}."""

    @abstractmethod
    async def generate_document(
        self,
        data: List[Dict[str, Any]],
        doc_type: str = "excel",
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write tabular data as CSV ("excel") or an HTML table ("word")."""
