from typing import Any, Dict, List, Optional

import httpx
import structlog

from trackdiff.config import ReviewConfig
from trackdiff.errors import UpstreamError

logger = structlog.get_logger(__name__)


class OllamaClient:
    """
    Minimal client for an Ollama-compatible text generation server.
    One request per call; failures are raised as UpstreamError and never retried.
    """

    def __init__(self, config: ReviewConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.base_url = config.ollama_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.Client:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=self.config.timeout,
            transport=self._transport,
        )

    def generate(self, prompt: str, model: Optional[str] = None) -> str:
        model = model or self.config.model
        payload = {"model": model, "prompt": prompt, "stream": False}
        logger.info("Sending prompt to model", model=model, chars=len(prompt))

        data = self._request("POST", "/api/generate", json=payload)
        response = data.get("response")
        if not isinstance(response, str):
            raise UpstreamError("Model response has no 'response' text")
        return response

    def list_models(self) -> List[str]:
        data = self._request("GET", "/api/tags")
        return [m["name"] for m in data.get("models", []) if "name" in m]

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Request timeout after {self.config.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Network error: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise UpstreamError(f"HTTP {resp.status_code}: {resp.reason_phrase}")
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"Parse error: {e}") from e
