import logging
from dataclasses import dataclass
from typing import Optional

from state.call_log import CallLogStore
from state.models import CallStatus, ModelConfig, Operation
from state.quota import QuotaStore
from .errors import QuotaExhaustedError
from .selector import ModelSelector

logger = logging.getLogger(__name__)


@dataclass
class StartedCall:
    log_id: str
    model: ModelConfig

    @property
    def credential(self) -> Optional[str]:
        return self.model.api_key or None


class UsageRecorder:
    """Call-log bookkeeping and quota counting around one generation attempt."""

    def __init__(self, selector: ModelSelector, quota: QuotaStore, logs: CallLogStore) -> None:
        self._selector = selector
        self._quota = quota
        self._logs = logs

    async def record_start(
        self,
        operation: Operation,
        user_id: Optional[str] = None,
        prompt_preview: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> StartedCall:
        model = await self._selector.select_model(user_id)
        if model is None:
            raise QuotaExhaustedError("No AI models available. All quota limits reached.")

        log_id = await self._logs.insert_log(
            operation=operation,
            model_id=model.id,
            user_id=user_id,
            project_id=project_id,
            prompt_preview=prompt_preview,
        )
        return StartedCall(log_id=log_id, model=model)

    async def record_success(
        self,
        call: StartedCall,
        input_tokens: int,
        output_tokens: int,
        response_preview: Optional[str] = None,
    ) -> None:
        try:
            await self._logs.update_log(
                call.log_id,
                CallStatus.SUCCESS,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                response_preview=response_preview,
            )
        except Exception as e:
            logger.warning("Failed to finalize call log %s: %s", call.log_id, e)

        # The attempt consumed quota even if its log could not be written.
        try:
            await self.increment_usage(call.model.id, int(input_tokens or 0) + int(output_tokens or 0))
        except Exception as e:
            logger.warning("Failed to increment usage for model %s: %s", call.model.model_id, e)

    async def record_failure(self, call: StartedCall, error_message: str) -> None:
        try:
            await self._logs.update_log(
                call.log_id,
                CallStatus.FAILED,
                input_tokens=0,
                output_tokens=0,
                response_preview="",
                error=error_message,
            )
        except Exception as e:
            logger.warning("Failed to record failure for call log %s: %s", call.log_id, e)

    async def increment_usage(self, model_id: str, tokens_used: int) -> None:
        updated = await self._quota.reset_and_increment(model_id, inc_requests=1, inc_tokens=tokens_used)
        if updated is None:
            logger.warning("Usage increment skipped: model %s no longer exists", model_id)
