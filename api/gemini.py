import time
import logging
from dataclasses import dataclass, field

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
STRATEGIES = ('best', 'first')


class GeminiError(Exception):
    def __init__(self, message, status=None, retryable=False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


def is_retryable(error):
    return isinstance(error, GeminiError) and error.retryable


class GeminiClient:
    """Thin wrapper over the generateContent REST endpoint."""

    def __init__(self, api_key, base_url='https://generativelanguage.googleapis.com/v1beta',
                 timeout=30, session=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def generate(self, model_id, parts):
        url = f"{self.base_url}/models/{model_id}:generateContent"
        payload = {"contents": [{"role": "user", "parts": parts}]}

        try:
            response = self.session.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise GeminiError(f"{model_id}: network error: {e}", retryable=True) from e
        except requests.RequestException as e:
            raise GeminiError(f"{model_id}: request failed: {e}") from e

        if response.status_code != 200:
            raise GeminiError(
                f"{model_id}: HTTP {response.status_code}: {response.text[:200]}",
                status=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise GeminiError(f"{model_id}: invalid JSON response", retryable=True) from e

        try:
            text = extract_text(result)
        except GeminiError as e:
            raise GeminiError(f"{model_id}: {e}") from e
        if not text.strip():
            raise GeminiError(f"{model_id}: empty response")
        return text


def extract_text(result):
    if not isinstance(result, dict):
        raise GeminiError("unexpected response shape")
    candidates = result.get('candidates') or []
    if not candidates:
        return ''
    first = candidates[0] if isinstance(candidates, list) else None
    content = first.get('content') if isinstance(first, dict) else None
    parts = content.get('parts') if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise GeminiError("unexpected response shape")
    return ''.join(p.get('text', '') for p in parts if isinstance(p, dict))


def score_text(text):
    """Rough quality score: longer, multi-line, structured answers rank higher."""
    if not text or not text.strip():
        return 0.0
    lines = [l.strip() for l in text.strip().splitlines() if l.strip()]
    structured = sum(1 for l in lines if l.startswith(('#', '-', '*', '•')) or l[:2].rstrip('.').isdigit())
    score = min(len(text.strip()), 4000) / 10.0
    score += min(len(lines), 60) * 2.0
    score += min(structured, 20) * 1.5
    return round(score, 2)


@dataclass
class RouterResult:
    text: str
    model: str
    score: float
    failures: dict = field(default_factory=dict)


class ModelRouter:
    """Try each model in order with retries, then keep the best (or first) answer."""

    def __init__(self, client, models, max_attempts=3, backoff=1.0, backoff_max=8.0,
                 strategy='best', sleep=time.sleep):
        if not models:
            raise ValueError("ModelRouter needs at least one model")
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown router strategy: {strategy}")
        self.client = client
        self.models = list(models)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.strategy = strategy
        self.sleep = sleep

    def _call_with_retry(self, model_id, parts):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.backoff_max),
            retry=retry_if_exception(is_retryable),
            reraise=True,
            sleep=self.sleep,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying %s (attempt %d)", model_id, attempt.retry_state.attempt_number)
                return self.client.generate(model_id, parts)

    def generate(self, parts):
        successes = []
        failures = {}
        last_error = None

        for model_id in self.models:
            try:
                text = self._call_with_retry(model_id, parts)
            except GeminiError as e:
                logger.warning("Model %s failed: %s", model_id, e)
                failures[model_id] = str(e)
                last_error = e
                continue

            result = RouterResult(text=text, model=model_id, score=score_text(text), failures=dict(failures))
            if self.strategy == 'first':
                return result
            successes.append(result)

        if not successes:
            raise GeminiError(f"All models failed; last error: {last_error}",
                              status=getattr(last_error, 'status', None))

        # max() keeps the first of equal scores, i.e. the earlier model
        return max(successes, key=lambda r: r.score)
