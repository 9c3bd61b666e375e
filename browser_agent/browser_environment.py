"""
Playwright implementation of BrowserEnvironment.

Design contract
---------------
* `_get_page()` ALWAYS returns a live Playwright `Page`; a missing or
  closed browser, context or page is recreated before use.
* Snapshot refs are stamped on the DOM as `data-agent-ref` attributes so
  later click/fill/getText calls resolve them with a plain CSS locator.
* Every action catches its own errors and returns
  {"success": False, "error": ...}; nothing raises into the agent loop.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus, urljoin

from bs4 import BeautifulSoup, NavigableString, Tag
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
)

from .config import settings
from .document_writer import write_document
from .environment import BrowserEnvironment
from .utils.logger import get_logger


logger = get_logger(__name__)


# ============================================================================
# Page scripts
# ============================================================================

SNAPSHOT_SCRIPT = """
(options) => {
  const INTERACTIVE = new Set(['button', 'link', 'textbox', 'checkbox', 'radio', 'combobox',
    'searchbox', 'slider', 'spinbutton', 'switch', 'tab', 'menuitem', 'option',
    'follow-button', 'user-link', 'video-link', 'heading']);

  document.querySelectorAll('[data-agent-ref]').forEach(el => el.removeAttribute('data-agent-ref'));

  const visible = (el) => {
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') return false;
    const rect = el.getBoundingClientRect();
    return rect.width > 0 && rect.height > 0;
  };

  const roleOf = (el) => {
    const explicit = el.getAttribute('role');
    if (explicit) return explicit;
    const tag = el.tagName.toLowerCase();
    const cls = (typeof el.className === 'string' ? el.className : '').toLowerCase();
    const text = (el.textContent || '').trim().slice(0, 20).toLowerCase();
    const href = el.getAttribute('href') || '';
    if (tag === 'a') {
      if (href.includes('space.bilibili.com') || href.includes('/member/') || href.includes('/up/')) return 'user-link';
      if (href.includes('video/BV') || href.includes('video/av') || href.includes('bilibili.com/video')) return 'video-link';
      return 'link';
    }
    if (['follow', '+ follow', 'subscribe', '关注', '+ 关注'].includes(text)) return 'follow-button';
    if (cls.includes('follow-btn') || cls.includes('btn-follow') || cls.includes('follow-button')) return 'follow-button';
    const map = {button: 'button', input: 'textbox', textarea: 'textbox', select: 'combobox',
      h1: 'heading', h2: 'heading', h3: 'heading', h4: 'heading'};
    if (tag === 'input') {
      const type = (el.getAttribute('type') || 'text').toLowerCase();
      if (type === 'checkbox' || type === 'radio') return type;
      if (type === 'submit' || type === 'button') return 'button';
      if (type === 'search') return 'searchbox';
    }
    return map[tag] || '';
  };

  const landmarkOf = (el) => {
    const box = el.closest('main, article, nav, header, [role="main"], [role="navigation"], .search-result, .result, [role="listitem"]');
    if (!box) return '';
    const role = box.getAttribute('role');
    if (role) return role;
    const cls = (typeof box.className === 'string' ? box.className : '').toLowerCase();
    if (cls.includes('search-result')) return 'search-result';
    if (cls.split(/\\s+/).includes('result')) return 'result';
    return box.tagName.toLowerCase();
  };

  const nodes = [];
  let counter = 0;
  const candidates = document.querySelectorAll('a, button, input, textarea, select, h1, h2, h3, h4, [role], [class*="follow"]');
  for (const el of candidates) {
    if (counter >= 400) break;
    if (!visible(el)) continue;
    const role = roleOf(el);
    if (!role) continue;
    if (options.interactiveOnly && !INTERACTIVE.has(role)) continue;
    const ref = 'e' + (++counter);
    el.setAttribute('data-agent-ref', ref);
    const name = (el.getAttribute('aria-label') || el.getAttribute('placeholder') ||
                  el.getAttribute('title') || el.innerText || el.value || '').trim().replace(/\\s+/g, ' ').slice(0, 100);
    nodes.push({ref, role, name, href: el.href || '', value: el.value || '', landmark: landmarkOf(el)});
  }
  return nodes;
}
"""

FIND_SEARCH_INPUT_SCRIPT = """
() => {
  const selectors = ['#kw', '#search-input', '.nav-search-input', 'input[type="search"]',
    'input[role="searchbox"]', '.search-input', 'input[class*="search-input"]',
    'input[aria-label*="search" i]', 'input[placeholder*="search" i]', 'input[aria-label*="搜索"]',
    'input[placeholder*="搜索"]', 'input[name="search"]', 'input[name="keyword"]', 'input[name="wd"]',
    'input[name="q"]', 'input[name="query"]', 'input[name="word"]'];
  const visible = (el) => { const r = el.getBoundingClientRect(); return r.width > 0 && r.height > 0; };
  document.querySelectorAll('[data-agent-search]').forEach(el => el.removeAttribute('data-agent-search'));
  let found = null;
  for (const sel of selectors) {
    const el = document.querySelector(sel);
    if (el && visible(el)) { found = el; break; }
  }
  if (!found) {
    let best = 0;
    for (const el of document.querySelectorAll('input[type="text"], input:not([type]), input[type="search"], textarea')) {
      if (!visible(el)) continue;
      const r = el.getBoundingClientRect();
      if (r.width * r.height > best) { best = r.width * r.height; found = el; }
    }
  }
  if (!found) return false;
  found.setAttribute('data-agent-search', '1');
  return true;
}
"""

KNOWN_SEARCH_ENGINES = {
    "baidu.com": "https://www.baidu.com/s?wd={}",
    "bilibili.com": "https://search.bilibili.com/all?keyword={}",
    "google.com": "https://www.google.com/search?q={}",
    "bing.com": "https://www.bing.com/search?q={}",
    "duckduckgo.com": "https://duckduckgo.com/?q={}",
    "yahoo.com": "https://search.yahoo.com/search?p={}",
}

MARKERS = {"follow-button": "[FOLLOW]", "user-link": "[USER]", "video-link": "[VIDEO]"}
LANDMARK_MARKERS = {"search-result": "[SEARCH-RESULT]"}

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)


# ============================================================================
# Pure helpers
# ============================================================================

def format_snapshot_tree(nodes: List[Dict[str, Any]]) -> str:
    """Render snapshot nodes as `- role "name" [ref=eN]` lines plus markers."""
    lines = []
    for node in nodes:
        parts = [f"- {node.get('role') or 'unknown'}"]
        if node.get("name"):
            parts.append(f'"{node["name"]}"')
        parts.append(f"[ref={node['ref']}]")
        if node.get("value") and node.get("role") in ("textbox", "searchbox", "combobox"):
            parts.append(f'[value="{node["value"]}"]')
        landmark = node.get("landmark")
        if landmark:
            parts.append(f"[in={landmark}]")
            if landmark in LANDMARK_MARKERS:
                parts.append(LANDMARK_MARKERS[landmark])
        marker = MARKERS.get(node.get("role", ""))
        if marker:
            parts.append(marker)
        if node.get("href") and node.get("role") in ("link", "user-link", "video-link"):
            parts.append(node["href"])
        lines.append(" ".join(parts))
    return "\n".join(lines)


def search_engine_url(current_url: str, query: str) -> Optional[str]:
    """Direct results URL when the current page belongs to a known search engine."""
    for domain, template in KNOWN_SEARCH_ENGINES.items():
        if domain in (current_url or ""):
            return template.format(quote_plus(query))
    return None


def html_to_markdown(html: str, base_url: str = "") -> str:
    """
    Convert page HTML to lightweight markdown.

    Keeps headings, paragraphs, list items and links; drops scripts,
    styles and other non-content tags.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "template", "iframe"]):
        tag.decompose()
    root = soup.body or soup

    out: List[str] = []

    def walk(node, depth: int = 0) -> None:
        if depth > 40:
            return
        for child in node.children:
            if isinstance(child, NavigableString):
                text = str(child).strip()
                if text:
                    out.append(text + " ")
                continue
            if not isinstance(child, Tag):
                continue
            name = child.name.lower()
            if name in ("h1", "h2", "h3", "h4", "h5", "h6"):
                out.append("\n\n" + "#" * int(name[1]) + " " + child.get_text(" ", strip=True) + "\n\n")
                continue
            if name == "a":
                text = child.get_text(" ", strip=True)
                href = child.get("href") or ""
                if base_url and href:
                    href = urljoin(base_url, href)
                if text:
                    out.append(f"[{text}]({href}) ")
                continue
            if name == "li":
                out.append("\n- ")
                walk(child, depth + 1)
                continue
            if name == "br":
                out.append("\n")
                continue
            block = name in ("p", "div", "section", "article", "main", "ul", "ol", "table", "tr", "header", "footer")
            if block:
                out.append("\n\n" if name == "p" else "\n")
            walk(child, depth + 1)
            if block:
                out.append("\n")

    walk(root)
    text = "".join(out)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def success(**data: Any) -> Dict[str, Any]:
    return {"success": True, **data}


def failure(msg: Any) -> Dict[str, Any]:
    return {"success": False, "error": str(msg)}


# ============================================================================
# PlaywrightBrowserEnvironment
# ============================================================================

class PlaywrightBrowserEnvironment(BrowserEnvironment):
    """
    Self-healing Playwright session exposing the agent's page actions.

    Usage::

        env = PlaywrightBrowserEnvironment()
        await env.start()
        result = await env.navigate("https://example.com")
        await env.stop()
    """

    def __init__(
        self,
        headless: Optional[bool] = None,
        timeout_ms: Optional[int] = None,
        output_dir: Optional[str] = None,
    ) -> None:
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self.timeout_ms = timeout_ms or settings.BROWSER_TIMEOUT_MS
        self.output_dir = output_dir or settings.DOCUMENT_OUTPUT_DIR
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self._get_page()

    async def stop(self) -> None:
        async with self._lock:
            await self._teardown_unsafe()
            logger.info("[Browser] Browser stopped")

    async def __aenter__(self) -> "PlaywrightBrowserEnvironment":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _get_page(self) -> Page:
        """Return a live Page, recreating any dead layer first."""
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                await self._teardown_unsafe()
                await self._cold_start()
            if self._context is None:
                self._context = await self._new_context()
                self._page = None
            if self._page is None or self._page.is_closed():
                logger.info("[Browser] Opening new page...")
                self._page = await self._context.new_page()
                self._page.set_default_timeout(self.timeout_ms)
            return self._page

    async def _new_context(self) -> BrowserContext:
        return await self._browser.new_context(  # type: ignore[union-attr]
            viewport={"width": 1280, "height": 800},
            user_agent=USER_AGENT,
        )

    async def _cold_start(self) -> None:
        """Start Playwright and launch a browser. Caller holds the lock."""
        logger.info(f"[Browser] Launching browser (headless={self.headless})...")
        self._playwright = await async_playwright().start()

        # Try real Chrome first; fall back to bundled Chromium
        try:
            self._browser = await self._playwright.chromium.launch(channel="chrome", headless=self.headless)
            logger.info("[Browser] Launched real Chrome (channel=chrome)")
        except Exception as chrome_err:
            logger.warning(f"[Browser] Real Chrome unavailable ({chrome_err}), falling back to bundled Chromium")
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            logger.info("[Browser] Launched bundled Chromium (fallback)")

        self._context = await self._new_context()
        self._page = await self._context.new_page()
        self._page.set_default_timeout(self.timeout_ms)
        logger.info("[Browser] Cold start complete, browser ready")

    async def _teardown_unsafe(self) -> None:
        """Close everything that is open. Caller holds the lock."""
        for obj, name in [(self._page, "page"), (self._context, "context"), (self._browser, "browser")]:
            if obj is not None:
                try:
                    await obj.close()
                except Exception as exc:
                    logger.debug(f"[Browser] {name} close error (ignored): {exc}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as exc:
                logger.debug(f"[Browser] playwright stop error (ignored): {exc}")

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

    @staticmethod
    def _ref_selector(ref: str) -> str:
        return f'[data-agent-ref="{ref}"]'

    # ── actions ───────────────────────────────────────────────────────────

    async def snapshot(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        try:
            page = await self._get_page()
            nodes = await page.evaluate(SNAPSHOT_SCRIPT, {"interactiveOnly": bool(options.get("interactiveOnly", True))})
            tree = format_snapshot_tree(nodes) or "(empty page)"
            refs = {
                node["ref"]: {"role": node.get("role"), "name": node.get("name"), "href": node.get("href")}
                for node in nodes
            }
            logger.info(f"[Browser] Snapshot OK | elements={len(nodes)}")
            return success(tree=tree, refs=refs, element_count=len(nodes))
        except Exception as e:
            logger.error(f"[Browser] Snapshot FAILED | error={e}")
            return {"success": False, "error": str(e), "tree": "", "refs": {}, "element_count": 0}

    async def click(self, ref: str) -> Dict[str, Any]:
        logger.info(f"[Browser] click ref={ref!r}")
        try:
            page = await self._get_page()
            locator = page.locator(self._ref_selector(ref))
            if await locator.count() == 0:
                return failure(f'Ref "{ref}" not found. Run snapshot first.')
            target = locator.first
            tag = await target.evaluate("el => el.tagName.toLowerCase()")
            href = await target.evaluate("el => el.href || (el.querySelector('a[href]') || {}).href || ''")
            if href and tag == "a" and not href.startswith("javascript:"):
                return success(message=f"Clicked link @{ref}", navigate=href)
            await target.click(timeout=self.timeout_ms)
            return success(message=f"Clicked @{ref}")
        except Exception as e:
            logger.error(f"[Browser] click FAILED | ref={ref!r} | error={e}")
            return failure(e)

    async def fill(self, ref: str, text: str) -> Dict[str, Any]:
        logger.info(f"[Browser] fill ref={ref!r} text={str(text)[:40]!r}")
        try:
            page = await self._get_page()
            locator = page.locator(self._ref_selector(ref))
            if await locator.count() == 0:
                return failure(f'Ref "{ref}" not found')
            await locator.first.fill(str(text), timeout=self.timeout_ms)
            return success(message=f'Filled "{text}" into @{ref}')
        except Exception as e:
            logger.error(f"[Browser] fill FAILED | ref={ref!r} | error={e}")
            return failure(e)

    async def scroll(self, direction: str = "down") -> Dict[str, Any]:
        try:
            page = await self._get_page()
            sign = -1 if direction == "up" else 1
            await page.evaluate(f"window.scrollBy(0, {sign} * window.innerHeight * 0.7)")
            return success(message=f"Scrolled {direction}")
        except Exception as e:
            logger.error(f"[Browser] scroll FAILED | error={e}")
            return failure(e)

    async def search(self, text: str) -> Dict[str, Any]:
        logger.info(f"[Browser] search text={text!r}")
        if not text:
            return failure("No search text provided")
        try:
            page = await self._get_page()
            direct = search_engine_url(page.url, text)
            if direct:
                await page.goto(direct, wait_until="domcontentloaded")
                return success(message=f'Searched for "{text}" via direct navigation')

            if not await page.evaluate(FIND_SEARCH_INPUT_SCRIPT):
                return failure("No search input found on this page")
            box = page.locator('[data-agent-search="1"]').first
            await box.fill(text)
            await box.press("Enter")
            return success(message=f'Searched for "{text}"')
        except Exception as e:
            logger.error(f"[Browser] search FAILED | error={e}")
            return failure(e)

    async def navigate(self, url: str) -> Dict[str, Any]:
        logger.info(f"[Browser] navigate -> {url}")
        try:
            page = await self._get_page()
            await page.goto(url, wait_until="domcontentloaded")
            title = await page.title()
            logger.info(f"[Browser] navigate OK | title={title!r}")
            return success(url=page.url, title=title)
        except Exception as e:
            logger.error(f"[Browser] navigate FAILED | url={url} | error={e}")
            return failure(e)

    async def get_url(self) -> Dict[str, Any]:
        try:
            page = await self._get_page()
            return success(url=page.url)
        except Exception as e:
            return failure(e)

    async def get_title(self) -> Dict[str, Any]:
        try:
            page = await self._get_page()
            return success(title=await page.title())
        except Exception as e:
            return failure(e)

    async def get_text(self, ref: str) -> Dict[str, Any]:
        try:
            page = await self._get_page()
            locator = page.locator(self._ref_selector(ref))
            if await locator.count() == 0:
                return failure(f'Ref "{ref}" not found')
            text = await locator.first.text_content()
            return success(text=(text or "").strip())
        except Exception as e:
            logger.error(f"[Browser] getText FAILED | ref={ref!r} | error={e}")
            return failure(e)

    async def get_markdown(self) -> Dict[str, Any]:
        try:
            page = await self._get_page()
            markdown = html_to_markdown(await page.content(), base_url=page.url)
            logger.info(f"[Browser] getMarkdown OK | chars={len(markdown)}")
            return success(markdown=markdown)
        except Exception as e:
            logger.error(f"[Browser] getMarkdown FAILED | error={e}")
            return failure(e)

    async def generate_document(
        self,
        data: List[Dict[str, Any]],
        doc_type: str = "excel",
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        return write_document(data, doc_type, filename, output_dir=self.output_dir)
