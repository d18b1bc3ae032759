import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from gateway.schemas import GenerationResult
from .base import ConfigurationError, GenerationProvider, ProviderError

logger = logging.getLogger(__name__)

CREDENTIAL_HINT = (
    "Add a Google API key in Settings > Model Rotation > Global API Configuration "
    "or set GOOGLE_API_KEY. Get a key from: https://aistudio.google.com/apikey"
)


class GeminiProvider(GenerationProvider):
    """Google Gemini adapter over the Generative Language REST API.

    - POST /models/{model}:generateContent with responseMimeType application/json
    - Authenticates per call with the ``x-goog-api-key`` header
    - Non-2xx responses raise ProviderError with the upstream status and message
    """

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client  # may be injected for tests

    @property
    def name(self) -> str:
        return "gemini"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {
            "x-goog-api-key": credential,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def generate(
        self,
        model_id: str,
        credential: Optional[str],
        prompt: str,
        temperature: float = 0.7,
    ) -> GenerationResult:
        if not credential:
            raise ConfigurationError(f"API key required. {CREDENTIAL_HINT}")

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "temperature": temperature,
            },
        }

        client = self._get_client()
        try:
            resp = await client.post(
                f"/models/{model_id}:generateContent",
                headers=self._headers(credential),
                content=json.dumps(payload),
            )
        except httpx.HTTPError as e:
            logger.error("Gemini transport error for %s: %s", model_id, e)
            raise ProviderError(f"Gemini request failed: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error("Gemini API error (%s) for %s: %s", resp.status_code, model_id, message)
            raise ProviderError(
                f"Gemini API error: {message}",
                status_code=resp.status_code,
                retry_after=resp.headers.get("retry-after"),
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError("Gemini returned a non-JSON envelope", status_code=resp.status_code) from e

        usage = data.get("usageMetadata") or {}
        return GenerationResult(
            text=_candidate_text(data),
            input_tokens=int(usage.get("promptTokenCount", 0) or 0),
            output_tokens=int(usage.get("candidatesTokenCount", 0) or 0),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _candidate_text(data: Dict[str, Any]) -> str:
    candidates: List[Dict[str, Any]] = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return resp.text or resp.reason_phrase
