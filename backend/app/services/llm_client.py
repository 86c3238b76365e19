import json
from typing import Any, Literal

import httpx

from app.core.settings import get_settings

MOCK_RESPONSE: dict[str, Any] = {
    "patient_name": None,
    "triage_level": "MED",
    "reason_short": "Mock triage summary",
    "chief_complaint": "Mock complaint",
    "symptoms": [],
    "risk_flags": [],
    "summary": "This is a mock summary of the call.",
    "recommendation": "Follow up with the primary care team.",
    "call": {
        "triage_level": "MED",
        "reason_short": "Mock triage summary",
        "chief_complaint": "Mock complaint",
        "symptoms": [],
        "risk_flags": [],
        "summary": "This is a mock summary of the call.",
        "recommendation": "Follow up with the primary care team.",
        "call_status": "Needs review",
    },
    "patient": {"risk_level": "MED", "patient_status": "Active"},
    "encounter": {"chief_complaint": "Mock complaint", "symptoms": [], "outcome": "Mock outcome"},
}


class LlmClient:
    def __init__(
        self,
        mode: Literal["vertex", "ollama", "http", "mock"] | None = None,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        ollama_base_url: str | None = None,
        ollama_model: str | None = None,
        http_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.mode = mode or settings.summarizer_mode
        self.api_key = api_key or settings.vertex_api_key
        self.model = model or settings.vertex_model
        self.base_url = base_url or settings.vertex_base_url
        self.ollama_base_url = ollama_base_url or settings.ollama_base_url
        self.ollama_model = ollama_model or settings.ollama_model
        self.http_url = http_url or settings.summarizer_http_url
        self.timeout = timeout or settings.summarizer_timeout_seconds
        self._transport = transport

    async def generate_text(self, prompt: str) -> str:
        if self.mode == "vertex":
            return await self._vertex_generate(prompt)
        if self.mode == "ollama":
            return await self._ollama_generate(prompt)
        if self.mode == "http":
            return await self._http_generate(prompt)
        if self.mode == "mock":
            return json.dumps(MOCK_RESPONSE)

        raise ValueError(f"Unsupported summarizer mode: {self.mode}")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _vertex_generate(self, prompt: str) -> str:
        if not self.api_key:
            raise ValueError("VERTEX_API_KEY must be set for vertex mode")
        url = f"{self.base_url.rstrip('/')}/{self.model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0},
        }
        async with self._client() as client:
            resp = await client.post(url, params={"key": self.api_key}, json=payload)
            resp.raise_for_status()
            data = resp.json()
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError("Vertex response did not contain any text") from exc

    async def _ollama_generate(self, prompt: str) -> str:
        url = self.ollama_base_url.rstrip("/") + "/api/generate"
        payload = {
            "model": self.ollama_model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0},
        }
        async with self._client() as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise ValueError("Ollama response did not contain any text")
        return text

    async def _http_generate(self, prompt: str) -> str:
        if not self.http_url:
            raise ValueError("SUMMARIZER_HTTP_URL must be set for http mode")
        url = self.http_url.rstrip("/") + "/generate"
        async with self._client() as client:
            resp = await client.post(url, json={"prompt": prompt})
            resp.raise_for_status()
            data = resp.json()
        if isinstance(data, dict) and "text" in data:
            return data["text"]
        if isinstance(data, str):
            return data
        return json.dumps(data)
