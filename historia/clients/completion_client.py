# historia/clients/completion_client.py
#
# Single integration layer for the chat-completion API (OpenAI-compatible,
# Groq by default). Non-streaming calls go through the openai SDK; the
# token stream is read straight off a shared requests.Session so the
# caller can close it mid-flight.

from __future__ import annotations

import json
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import openai
import requests
from openai import OpenAI

from historia.config.settings import Settings
from historia.core.prompting import compose_system_prompt
from historia.personas.catalog import Persona, PersonaProfile
from historia.utils.logging import get_logger

logger = get_logger(__name__)

SSE_PREFIX = "data:"
SSE_DONE = "[DONE]"


class CompletionErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"


class CompletionError(RuntimeError):
    def __init__(self, kind: CompletionErrorKind, message: str = "", *, status: Optional[int] = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status = status


@dataclass
class CompletionRequest:
    messages: List[Dict[str, Any]]
    model: str
    temperature: float = 0.7
    max_tokens: int = 400

    def to_payload(self, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class MinIntervalLimiter:
    """
    Keeps at least `min_interval` seconds between two request starts.
    Callers wait; nothing is rejected.
    """

    def __init__(
        self,
        min_interval: float = 0.5,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """Block until a request may start; returns the seconds slept."""
        with self._lock:
            now = self._clock()
            slept = 0.0
            if self._last is not None:
                remaining = self._last + self.min_interval - now
                if remaining > 0:
                    self._sleep(remaining)
                    slept = remaining
                    now = self._last + self.min_interval
            self._last = now
            return slept


_SHARED_LIMITER: Optional[MinIntervalLimiter] = None
_SHARED_LIMITER_LOCK = threading.Lock()


def shared_limiter(min_interval: float = 0.5) -> MinIntervalLimiter:
    """Process-wide limiter; the interval of the first caller wins."""
    global _SHARED_LIMITER
    with _SHARED_LIMITER_LOCK:
        if _SHARED_LIMITER is None:
            _SHARED_LIMITER = MinIntervalLimiter(min_interval)
        elif _SHARED_LIMITER.min_interval != min_interval:
            logger.warning(
                "Shared rate limiter already set to %.3fs; ignoring %.3fs.",
                _SHARED_LIMITER.min_interval, min_interval,
            )
        return _SHARED_LIMITER


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _join_api(base_v1: str, path_no_leading_slash: str) -> str:
    b = (base_v1 or "").rstrip("/")
    p = (path_no_leading_slash or "").lstrip("/")
    return f"{b}/{p}"


def _kind_for_status(status: int) -> CompletionErrorKind:
    if status in (401, 403):
        return CompletionErrorKind.AUTH
    if status == 429:
        return CompletionErrorKind.RATE_LIMITED
    return CompletionErrorKind.SERVER


def _classify_openai_error(e: Exception) -> CompletionErrorKind:
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return CompletionErrorKind.AUTH
    if isinstance(e, openai.RateLimitError):
        return CompletionErrorKind.RATE_LIMITED
    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(e, openai.APIConnectionError):
        return CompletionErrorKind.NETWORK
    if isinstance(e, openai.APIStatusError):
        return _kind_for_status(e.status_code)
    if isinstance(e, openai.APIResponseValidationError):
        return CompletionErrorKind.MALFORMED_RESPONSE

    msg = (str(e) or "").lower()
    if "401" in msg or "incorrect api key" in msg or "authentication" in msg:
        return CompletionErrorKind.AUTH
    if "429" in msg or "rate limit" in msg:
        return CompletionErrorKind.RATE_LIMITED
    if "timeout" in msg or "timed out" in msg or "connection" in msg:
        return CompletionErrorKind.NETWORK
    return CompletionErrorKind.SERVER


def parse_stream_delta(data: str) -> Optional[str]:
    """
    Content of one streamed chunk. Returns "" for chunks without content
    (role-only deltas, usage trailers) and None for fragments that are not
    a completion chunk at all.
    """
    try:
        obj = json.loads(data)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    if "error" in obj:
        err = obj.get("error")
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise CompletionError(CompletionErrorKind.SERVER, f"error in stream: {message}")

    choices = obj.get("choices")
    if not isinstance(choices, list):
        return None
    if not choices:
        return ""
    delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else ""


@dataclass
class _StreamState:
    text: str = ""
    malformed: int = 0
    chunks: int = 0
    done: bool = False
    started: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CompletionClient:
    """
    Stateless with respect to conversations: callers pass the full message
    list each time through a CompletionRequest.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        openai_client: Any = None,
        http_session: Optional[requests.Session] = None,
        limiter: Optional[MinIntervalLimiter] = None,
    ) -> None:
        base = (settings.base_url or "").strip()
        if not (base.startswith("http://") or base.startswith("https://")):
            raise RuntimeError(f"HISTORIA_BASE_URL is invalid (missing scheme): {base!r}")

        self._settings = settings
        self._base_url = base.rstrip("/")
        self._timeout = settings.timeout_seconds
        self._openai = openai_client or OpenAI(
            api_key=settings.api_key,
            base_url=self._base_url,
            timeout=settings.timeout_seconds,
            max_retries=0,
        )
        self._http = http_session or requests.Session()
        self._http.headers.update({"User-Agent": "historia/chat-client (requests)"})
        self._limiter = limiter or shared_limiter(settings.min_request_interval)

    @property
    def settings(self) -> Settings:
        return self._settings

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.api_key}"}

    def build_request(
        self,
        persona: Persona,
        history: Sequence[Dict[str, str]],
        user_text: str,
        image_ref: Optional[str] = None,
        profile: Optional[PersonaProfile] = None,
        history_pairs: Optional[int] = None,
    ) -> CompletionRequest:
        """
        System prompt, then the most recent history pairs, then the new user
        message (text plus image_url parts when an image is attached).
        history_pairs overrides the configured window.
        """
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": compose_system_prompt(persona, profile)},
        ]

        pairs = self._settings.history_pairs if history_pairs is None else history_pairs
        max_messages = max(0, pairs) * 2
        recent = list(history)[-max_messages:] if max_messages else []
        messages.extend({"role": m["role"], "content": m["content"]} for m in recent)

        if image_ref:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": user_text},
                    {"type": "image_url", "image_url": {"url": image_ref}},
                ],
            })
        else:
            messages.append({"role": "user", "content": user_text})

        model = self._settings.model
        if image_ref and self._settings.vision_model:
            model = self._settings.vision_model

        return CompletionRequest(
            messages=messages,
            model=model,
            temperature=self._settings.temperature,
            max_tokens=self._settings.max_tokens,
        )

    def complete(self, request: CompletionRequest) -> str:
        """One blocking call; returns the reply text or raises CompletionError."""
        req_id = _mk_req_id("chat")
        self._limiter.wait()

        logger.info("[chat] req_id=%s start model=%s base=%s msg_count=%d",
                    req_id, request.model, self._base_url, len(request.messages))
        t0 = time.monotonic()
        try:
            resp = self._openai.chat.completions.create(
                model=request.model,
                messages=request.messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except openai.OpenAIError as e:
            dt_ms = int((time.monotonic() - t0) * 1000)
            kind = _classify_openai_error(e)
            logger.warning("[chat] req_id=%s FAIL latency_ms=%d model=%s code=%s err=%s",
                           req_id, dt_ms, request.model, kind.value, str(e))
            raise CompletionError(kind, str(e), status=getattr(e, "status_code", None)) from e

        dt_ms = int((time.monotonic() - t0) * 1000)
        try:
            content = resp.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError):
            content = ""
        content = content.strip()
        if not content:
            logger.warning("[chat] req_id=%s empty reply latency_ms=%d", req_id, dt_ms)
            raise CompletionError(CompletionErrorKind.MALFORMED_RESPONSE, "empty response from model")

        snippet = content[:240] + ("..." if len(content) > 240 else "")
        logger.info("[chat] req_id=%s OK latency_ms=%d model=%s reply=%r",
                    req_id, dt_ms, request.model, snippet)
        return content

    def complete_streaming(self, request: CompletionRequest) -> Iterator[str]:
        """
        Lazy generator of cumulative reply text, one value per content-bearing
        chunk. Nothing is sent until the first next(). Closing the generator
        closes the HTTP response.
        """
        req_id = _mk_req_id("stream")
        self._limiter.wait()

        url = _join_api(self._base_url, "chat/completions")
        logger.info("[stream] req_id=%s start model=%s msg_count=%d",
                    req_id, request.model, len(request.messages))
        try:
            resp = self._http.post(
                url,
                headers={**self._auth_headers(), "Accept": "text/event-stream"},
                json=request.to_payload(stream=True),
                stream=True,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("[stream] req_id=%s HTTP exception err=%s", req_id, str(e))
            raise CompletionError(CompletionErrorKind.NETWORK, f"request failed: {e}") from e

        state = _StreamState()
        try:
            if resp.status_code != 200:
                body_preview = (resp.text or "")[:400]
                kind = _kind_for_status(resp.status_code)
                logger.warning("[stream] req_id=%s non-200 status=%d code=%s body=%r",
                               req_id, resp.status_code, kind.value, body_preview)
                raise CompletionError(kind, f"status {resp.status_code}: {body_preview}", status=resp.status_code)

            try:
                for raw in resp.iter_lines():
                    line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else (raw or "")
                    line = line.strip()
                    if not line.startswith(SSE_PREFIX):
                        continue
                    data = line[len(SSE_PREFIX):].strip()
                    if data == SSE_DONE:
                        state.done = True
                        break

                    delta = parse_stream_delta(data)
                    if delta is None:
                        state.malformed += 1
                        logger.debug("[stream] req_id=%s skipped fragment %r", req_id, data[:120])
                        continue
                    if delta:
                        state.chunks += 1
                        state.text += delta
                        yield state.text
            except requests.RequestException as e:
                logger.warning("[stream] req_id=%s interrupted after %d chunks err=%s",
                               req_id, state.chunks, str(e))
                raise CompletionError(CompletionErrorKind.NETWORK, f"stream interrupted: {e}") from e

            if not state.done:
                logger.warning("[stream] req_id=%s ended without %s after %d chunks",
                               req_id, SSE_DONE, state.chunks)
                raise CompletionError(CompletionErrorKind.NETWORK, "stream ended before completion")
            if not state.text:
                logger.warning("[stream] req_id=%s no content malformed=%d", req_id, state.malformed)
                raise CompletionError(CompletionErrorKind.MALFORMED_RESPONSE, "stream carried no content")

            dt_ms = int((time.monotonic() - state.started) * 1000)
            logger.info("[stream] req_id=%s OK latency_ms=%d chunks=%d chars=%d skipped=%d",
                        req_id, dt_ms, state.chunks, len(state.text), state.malformed)
        finally:
            resp.close()

    def ping(self) -> bool:
        """GET /models as a reachability and credential check."""
        try:
            resp = self._http.get(
                _join_api(self._base_url, "models"),
                headers=self._auth_headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("Completion API ping failed: %s", e)
            return False
        if resp.status_code != 200:
            logger.warning("Completion API ping returned status %d", resp.status_code)
            return False
        return True

    def runtime_config(self) -> Dict[str, str]:
        """Non-secret configuration, for logs and debug output."""
        return {
            "base_url": self._base_url,
            "api_key_set": "YES" if self._settings.api_key.strip() else "NO",
            "model": self._settings.model,
            "vision_model": self._settings.vision_model or "",
            "temperature": str(self._settings.temperature),
            "max_tokens": str(self._settings.max_tokens),
            "min_request_interval": str(self._limiter.min_interval),
        }
