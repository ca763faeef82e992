from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from codeautopsy.errors import CollaboratorError


# Worth another try: rate limiting and upstream hiccups.
_RETRY_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class ChatClient:
    """
    OpenAI-compatible chat completions client (OpenRouter by default).

    Endpoint: POST {base_url}/chat/completions
    """

    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_s: float = 60.0
    max_retries: int = 3
    retry_backoff_s: float = 0.8
    app_name: str | None = "CodeAutopsy"
    transport: Optional[httpx.BaseTransport] = None

    def chat(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 2048,
        temperature: float | None = None,
    ) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_name:
            headers["X-Title"] = self.app_name

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            # Some providers assume a huge default and then reject small prompts for lack of credit.
            "max_tokens": int(max(1, min(int(max_tokens), 8192))),
        }
        if temperature is not None:
            payload["temperature"] = float(temperature)

        attempts = max(1, int(self.max_retries))
        for attempt in range(1, attempts + 1):
            try:
                with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                    r = client.post(url, headers=headers, json=payload)
            except (
                httpx.ReadError,
                httpx.RemoteProtocolError,
                httpx.ProtocolError,
                httpx.ConnectError,
                httpx.TimeoutException,
            ) as e:
                if attempt < attempts:
                    time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                    continue
                raise CollaboratorError(f"llm_transient_error after {attempt} attempts: {e}") from e

            if r.status_code in _RETRY_STATUS and attempt < attempts:
                time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                continue
            if r.status_code != 200:
                raise CollaboratorError(f"llm_http_{r.status_code}: {r.text[:1500]}")
            try:
                data = r.json()
                content = data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise CollaboratorError(f"llm_response_parse_error: {r.text[:500]}") from e
            if not isinstance(content, str):
                raise CollaboratorError("llm_response_parse_error: empty content")
            return content

        raise CollaboratorError("llm_failed: retries exhausted")
