# backend/photo_analysis/analysis_client.py
"""
Client for the upstream vision API (OpenAI chat-completions with image input).

Status codes and what the queue does with them:

    400 bad_request           no retry; the photo gets an error caption
    401 authentication_error  no retry, critical: the queue is paused
    403 permission_error      no retry, critical
    404 not_found             no retry, critical (usually a bad model name)
    429 rate_limit_error      retry after the indicated delay
    429 quota_exceeded        no retry, critical (no credits left, retrying won't help)
    5xx server_error          retry after 5-10s
    transport failure         network_error, retry
    anything else             unknown, retry only when status >= 500

Settings live in the system_config table so an operator can change the key or
model without a restart; call load_config() to pick up changes.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from sqlmodel import Session, select

from . import config
from .models import SystemConfig, utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
MIN_KEY_LENGTH = 10

QUOTA_MARKERS = ("exceeded your current quota", "quota", "billing", "plan")


@dataclass(frozen=True)
class UpstreamErrorKind:
    type: str
    status: int
    message: str
    retryable: bool
    critical: bool = False
    retry_after: Optional[float] = None  # seconds


@dataclass
class AnalysisResult:
    success: bool
    content: str = ""
    error: Optional[UpstreamErrorKind] = None
    tokens_used: int = 0

    @property
    def critical(self) -> bool:
        return bool(self.error and self.error.critical)


def _parse_seconds(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def classify_error(status: int, body: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None, model: str = "") -> UpstreamErrorKind:
    """Map a non-success HTTP response to an error kind. New status codes go here."""
    error = body.get("error") if isinstance(body, dict) else None
    error = error or {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    message = error.get("message") or f"HTTP error {status}"
    headers = headers or {}

    if status == 400:
        logger.error("[400 bad_request] invalid request: %s", message)
        return UpstreamErrorKind("bad_request", status, message, retryable=False)

    if status == 401:
        logger.error("[401 authentication_error] API key invalid or expired: %s", message)
        return UpstreamErrorKind("authentication_error", status, "API key invalid or expired",
                                 retryable=False, critical=True)

    if status == 403:
        logger.error("[403 permission_error] no access to model %s: %s", model, message)
        return UpstreamErrorKind("permission_error", status, "No permission to use this model",
                                 retryable=False, critical=True)

    if status == 404:
        logger.error("[404 not_found] model %r not found: %s", model, message)
        return UpstreamErrorKind("not_found", status, "Model not found",
                                 retryable=False, critical=True)

    if status == 429:
        lowered = message.lower()
        if any(marker in lowered for marker in QUOTA_MARKERS):
            logger.error("[429 quota_exceeded] account has no credits left, queue must be paused: %s", message)
            return UpstreamErrorKind("quota_exceeded", status,
                                     "Account has no credits left; add balance with the API provider",
                                     retryable=False, critical=True)
        retry_after = (_parse_seconds(headers.get("retry-after") or headers.get("Retry-After"))
                       or _parse_seconds(error.get("retry_after"))
                       or 60.0)
        logger.warning("[429 rate_limit_error] too many requests, waiting %.0fs", retry_after)
        return UpstreamErrorKind("rate_limit_error", status, "Rate limit exceeded",
                                 retryable=True, retry_after=retry_after)

    if status in (500, 502, 504):
        logger.warning("[%s server_error] upstream failure, retrying in 5s: %s", status, message)
        return UpstreamErrorKind("server_error", status, message, retryable=True, retry_after=5.0)

    if status == 503:
        logger.warning("[503 server_error] upstream unavailable, retrying in 10s: %s", message)
        return UpstreamErrorKind("server_error", status, message, retryable=True, retry_after=10.0)

    retryable = status >= 500
    logger.error("[%s unknown] %s (%s)", status, message, "retrying" if retryable else "not retrying")
    return UpstreamErrorKind("unknown", status, message,
                             retryable=retryable, retry_after=5.0 if retryable else None)


class AnalysisClient:
    def __init__(self, engine, http: Optional[requests.Session] = None,
                 base_url: str = config.OPENAI_BASE_URL, timeout: float = config.OPENAI_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.engine = engine
        self.http = http or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None

        self.api_key: Optional[str] = None
        self.model = config.DEFAULT_MODEL
        self.max_tokens = config.DEFAULT_MAX_TOKENS
        self.rate_limit_rpm = config.DEFAULT_RATE_LIMIT_RPM
        self.rate_limit_delay_ms = config.DEFAULT_RATE_LIMIT_DELAY_MS

    # --- configuration ---

    def load_config(self):
        with Session(self.engine) as session:
            values = {row.key: row.value for row in session.exec(select(SystemConfig)).all()}

        self.api_key = values.get("openai_api_key") or None
        self.model = values.get("openai_model") or config.DEFAULT_MODEL
        self.max_tokens = int(values.get("openai_max_tokens") or config.DEFAULT_MAX_TOKENS)
        self.rate_limit_rpm = int(values.get("rate_limit_rpm") or config.DEFAULT_RATE_LIMIT_RPM)
        self.rate_limit_delay_ms = int(values.get("rate_limit_delay_ms") or config.DEFAULT_RATE_LIMIT_DELAY_MS)
        logger.info("vision API settings loaded: model=%s rpm=%s delay=%sms",
                    self.model, self.rate_limit_rpm, self.rate_limit_delay_ms)

    def is_configured(self) -> bool:
        return bool(self.api_key) and len(self.api_key) > MIN_KEY_LENGTH

    def update_api_key(self, api_key: str, user_id: Optional[str] = None):
        with Session(self.engine) as session:
            row = session.get(SystemConfig, "openai_api_key") or SystemConfig(key="openai_api_key")
            row.value = api_key
            row.updated_by = user_id
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
        self.api_key = api_key
        logger.info("vision API key updated (ending ...%s)", api_key[-4:])

    def _headers(self):
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def test_connection(self) -> Dict[str, Any]:
        if not self.is_configured():
            return {"success": False, "message": "API key not configured"}
        try:
            resp = self.http.get(f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            return {"success": False, "message": f"Connection error: {e}"}

        if resp.ok:
            return {"success": True, "message": "Connection established"}
        try:
            body = resp.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        message = error.get("message") if isinstance(error, dict) else None
        return {"success": False, "message": message or f"Error {resp.status_code}"}

    # --- analysis ---

    def _min_interval(self) -> float:
        interval = self.rate_limit_delay_ms / 1000.0
        if self.rate_limit_rpm > 0:
            interval = max(interval, 60.0 / self.rate_limit_rpm)
        return interval

    def _wait_for_rate_limit(self):
        with self._lock:
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                wait = self._min_interval() - elapsed
                if wait > 0:
                    logger.debug("rate limit: sleeping %.2fs", wait)
                    self._sleep(wait)
            self._last_request = self._clock()

    def _request(self, image_url: str, prompt: str) -> AnalysisResult:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
                ],
            }],
        }
        try:
            resp = self.http.post(f"{self.base_url}/chat/completions", json=payload,
                                  headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("network error calling vision API: %s", e)
            return AnalysisResult(False, error=UpstreamErrorKind(
                "network_error", 0, str(e) or "Connection error", retryable=True))

        if resp.ok:
            data = resp.json()
            choices = data.get("choices") or [{}]
            content = ((choices[0].get("message") or {}).get("content") or "").strip()
            tokens = (data.get("usage") or {}).get("total_tokens", 0)
            logger.debug("analysis done: %s", content[:100])
            return AnalysisResult(True, content=content, tokens_used=tokens)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        return AnalysisResult(False, error=classify_error(resp.status_code, body, resp.headers, self.model))

    def analyze_image(self, image_url: str, prompt: str) -> AnalysisResult:
        if not self.is_configured():
            return AnalysisResult(False, error=UpstreamErrorKind(
                "configuration_error", 0, "API key not configured", retryable=False))

        attempt = 0
        while True:
            self._wait_for_rate_limit()
            result = self._request(image_url, prompt)
            if result.success:
                return result

            error = result.error
            if not error.retryable or attempt >= MAX_RETRIES:
                return result

            attempt += 1
            wait = error.retry_after if error.retry_after is not None else attempt * 5.0
            logger.warning("error %s (%s), waiting %.0fs before retry %d/%d",
                           error.status, error.type, wait, attempt, MAX_RETRIES)
            self._sleep(wait)
