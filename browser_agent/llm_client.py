"""
LLM client for OpenAI-compatible chat completion endpoints.

  - httpx.AsyncClient, one request per attempt
  - Bearer auth when LLM_API_KEY is set
  - LLM_MAX_RETRIES attempts with exponential backoff on transport errors
  - response-structure errors are not retried
  - raises LLMError once every attempt has failed
"""

import asyncio
import json
import time
import traceback
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

from .config import settings
from .errors import LLMError
from .utils.logger import get_logger


load_dotenv()

logger = get_logger(__name__)


class LLMClient:
    """
    Async HTTP client for a chat completions endpoint.

    The agent only needs call_llm(messages) -> str; everything else here is
    transport detail.
    """

    def __init__(
        self,
        base_url:    Optional[str] = None,
        model:       Optional[str] = None,
        api_key:     Optional[str] = None,
        timeout:     Optional[int] = None,
        max_retries: Optional[int] = None,
        transport:   Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 2.0,
    ):
        self.base_url    = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self.model       = model or settings.LLM_MODEL
        self.api_key     = api_key if api_key is not None else settings.LLM_API_KEY
        self.timeout     = int(timeout or settings.LLM_TIMEOUT)
        self.max_tokens  = settings.LLM_MAX_TOKENS
        self.temperature = settings.LLM_TEMPERATURE
        self.max_retries = max(1, max_retries if max_retries is not None else settings.LLM_MAX_RETRIES)
        self.backoff_base = backoff_base
        self._transport  = transport

        self._chat_url   = f"{self.base_url}/chat/completions"
        self._models_url = f"{self.base_url}/models"

        logger.info(
            f"[LLMClient] Ready | model={self.model} | "
            f"url={self.base_url} | timeout={self.timeout}s | retries={self.max_retries}"
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, messages: List[Dict], temperature: float, max_tokens: int) -> Dict:
        return {
            "model":       self.model,
            "messages":    messages,
            "temperature": temperature,
            "max_tokens":  max_tokens,
        }

    def _parse(self, result: Dict) -> str:
        try:
            return result["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise LLMError(f"Bad LLM response structure: {exc} | raw={str(result)[:300]}") from exc

    def _client(self, timeout: float) -> httpx.AsyncClient:
        if self._transport is not None:
            return httpx.AsyncClient(timeout=timeout, transport=self._transport)
        return httpx.AsyncClient(timeout=timeout)

    def _backoff(self, attempt: int) -> float:
        if self.backoff_base <= 0:
            return 0
        return max(self.backoff_base, self.backoff_base ** (attempt - 1))

    # ------------------------------------------------------------------
    # call_llm
    # ------------------------------------------------------------------

    async def call_llm(
        self,
        messages:    List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens:  Optional[int]   = None,
    ) -> str:
        """
        Send a chat completion request and return the assistant text.

        Args:
            messages: OpenAI-style [{role, content}] list
            temperature: Overrides LLM_TEMPERATURE
            max_tokens: Overrides LLM_MAX_TOKENS

        Returns:
            Assistant message content, stripped

        Raises:
            LLMError: Every attempt failed or the response had no content
        """
        temp    = temperature if temperature is not None else self.temperature
        max_tok = max_tokens  if max_tokens  is not None else self.max_tokens
        payload = self._payload(messages, temp, max_tok)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            t0 = time.monotonic()
            try:
                logger.info(
                    f"[LLMClient] Attempt {attempt}/{self.max_retries} "
                    f"-> POST {self._chat_url} (timeout={self.timeout}s)"
                )
                logger.debug(f"[LLMClient] Payload: {json.dumps(payload, ensure_ascii=False)[:300]}")

                async with self._client(self.timeout) as client:
                    resp = await client.post(self._chat_url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    data = resp.json()

                latency = time.monotonic() - t0
                text    = self._parse(data)
                logger.info(
                    f"[LLMClient] OK | latency={latency:.2f}s | "
                    f"chars={len(text)} | model={self.model}"
                )
                return text

            except httpx.TimeoutException as exc:
                last_error = exc
                logger.warning(f"[LLMClient] Attempt {attempt} TIMEOUT after {self.timeout}s, model={self.model}")
            except httpx.ConnectError as exc:
                last_error = exc
                logger.error(f"[LLMClient] Attempt {attempt} CONNECTION REFUSED at {self.base_url}")
            except httpx.HTTPStatusError as exc:
                last_error = exc
                logger.error(
                    f"[LLMClient] Attempt {attempt} HTTP {exc.response.status_code}: "
                    f"{exc.response.text[:400]}"
                )
            except (json.JSONDecodeError, LLMError) as exc:
                logger.error(f"[LLMClient] Attempt {attempt} PARSE ERROR: {exc}")
                logger.debug(traceback.format_exc())
                if isinstance(exc, LLMError):
                    raise
                raise LLMError(f"Invalid JSON from LLM endpoint: {exc}") from exc
            except httpx.HTTPError as exc:
                last_error = exc
                logger.error(f"[LLMClient] Attempt {attempt} TRANSPORT ERROR: {type(exc).__name__}: {exc}")

            if attempt < self.max_retries:
                wait = self._backoff(attempt)
                logger.info(f"[LLMClient] Retrying in {wait}s...")
                await asyncio.sleep(wait)

        logger.error(f"[LLMClient] All attempts failed. Last: {last_error}")
        raise LLMError(f"LLM call failed after {self.max_retries} attempts: "
                       f"{type(last_error).__name__}: {last_error}") from last_error

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    async def health_check(self) -> Dict[str, Any]:
        """
        Check endpoint reachability and verify the model is listed.
        Returns dict: {available, model_loaded, model_name, error}
        """
        result: Dict[str, Any] = {
            "available":    False,
            "model_loaded": False,
            "model_name":   self.model,
            "error":        None,
        }
        try:
            async with self._client(6) as client:
                resp = await client.get(self._models_url, headers=self._headers())
                resp.raise_for_status()

            result["available"] = True
            ids = [m.get("id", "") for m in resp.json().get("data", [])]
            loaded = any(self.model in i or i in self.model for i in ids if i)
            result["model_loaded"] = loaded

            if loaded:
                logger.info(f"[LLMClient] Health OK, '{self.model}' is listed")
            else:
                result["error"] = f"'{self.model}' not found. Available: {ids}"
                logger.warning(f"[LLMClient] Health WARNING: {result['error']}")

        except httpx.ConnectError:
            result["error"] = f"Cannot connect to {self.base_url}"
            logger.error("[LLMClient] Health FAIL: connection refused")
        except httpx.TimeoutException:
            result["error"] = "Health check timed out"
            logger.error("[LLMClient] Health FAIL: timeout")
        except (httpx.HTTPError, ValueError) as exc:
            result["error"] = str(exc)
            logger.error(f"[LLMClient] Health FAIL: {exc}")

        return result
