import json
import logging
from typing import Any, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from gateway.schemas import GenerationOptions, TokenUsage
from providers.base import GenerationProvider
from providers.gemini import CREDENTIAL_HINT
from state.quota import QuotaStore
from .errors import ConfigurationError, ProviderError
from .usage import StartedCall, UsageRecorder

logger = logging.getLogger(__name__)


class Router:
    """Runs one generation: select a model, log, call the provider, record."""

    def __init__(
        self,
        provider: GenerationProvider,
        recorder: UsageRecorder,
        quota: QuotaStore,
        default_api_key: Optional[str] = None,
        preview_max_chars: int = 500,
    ) -> None:
        self._provider = provider
        self._recorder = recorder
        self._quota = quota
        self._default_api_key = default_api_key
        self._preview_max = preview_max_chars

    @property
    def quota(self) -> QuotaStore:
        return self._quota

    async def run_single(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        response_model: Optional[Type[BaseModel]] = None,
    ) -> Any:
        data, _ = await self.execute(prompt, options, response_model=response_model)
        return data

    async def execute(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        response_model: Optional[Type[BaseModel]] = None,
    ) -> Tuple[Any, TokenUsage]:
        options = options or GenerationOptions()
        call = await self._recorder.record_start(
            operation=options.operation,
            user_id=options.user_id,
            prompt_preview=prompt[: self._preview_max],
            project_id=options.project_id,
        )

        try:
            credential = await self._resolve_credential(call, options.user_id)
            logger.info("Generating %s with %s", options.operation.value, call.model.model_id)
            result = await self._provider.generate(
                call.model.model_id,
                credential,
                prompt,
                temperature=options.temperature,
            )
            data = _parse_payload(result.text, response_model)
        except Exception as e:
            await self._recorder.record_failure(call, str(e))
            raise

        await self._recorder.record_success(
            call,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            response_preview=result.text[: self._preview_max],
        )
        return data, TokenUsage(input=result.input_tokens, output=result.output_tokens)

    async def _resolve_credential(self, call: StartedCall, user_id: Optional[str]) -> str:
        """Model credential, then stored scope/global credential, then process default."""
        if call.credential:
            return call.credential
        stored = await self._quota.get_scope_credential(user_id)
        if stored:
            return stored
        if self._default_api_key:
            return self._default_api_key
        raise ConfigurationError(f"API key not configured. {CREDENTIAL_HINT}")


def _parse_payload(text: str, response_model: Optional[Type[BaseModel]] = None) -> Any:
    if not text:
        data = None
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Provider returned malformed JSON: {e}") from e

    if response_model is None:
        return data
    try:
        return response_model.model_validate(data)
    except ValidationError as e:
        raise ProviderError(f"Provider JSON does not match {response_model.__name__}: {e}") from e
