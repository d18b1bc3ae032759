import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from state.models import ModelConfig
from state.quota import QuotaStore

logger = logging.getLogger(__name__)

MINUTE_WINDOW = timedelta(milliseconds=60000)


def minute_window_elapsed(model: ModelConfig, now: datetime) -> bool:
    return model.last_reset_minute is None or now - model.last_reset_minute >= MINUTE_WINDOW


def day_window_elapsed(model: ModelConfig, now: datetime) -> bool:
    return model.last_reset_day is None or model.last_reset_day.date() != now.date()


class ModelSelector:
    """Pick the first model in priority order that still has request quota.

    Selection and the later usage increment are not one transaction: under
    contention several callers can pick the same model before any of them
    has counted its request, so short over-quota bursts are possible.
    """

    def __init__(self, store: QuotaStore, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self._store = store
        self._clock = clock

    async def select_model(self, user_id: Optional[str] = None) -> Optional[ModelConfig]:
        now = self._clock()
        models = await self._store.list_enabled_models(user_id)

        for model in models:
            current = await self._refresh_windows(model, now)
            if current is None:
                continue
            if current.has_headroom():
                logger.debug("Selected model %s (priority %d)", current.model_id, current.priority)
                return current
            logger.info(
                "Skipping model %s: minute %d/%d, day %d/%d",
                current.model_id,
                current.current_minute_requests,
                current.rpm,
                current.current_day_requests,
                current.rpd,
            )

        logger.warning("No model with quota left for scope %s", user_id or "global")
        return None

    async def _refresh_windows(self, model: ModelConfig, now: datetime) -> Optional[ModelConfig]:
        reset_minute = minute_window_elapsed(model, now)
        reset_day = day_window_elapsed(model, now)
        if not (reset_minute or reset_day):
            return model

        expected = {}
        if reset_minute:
            expected["last_reset_minute"] = model.last_reset_minute
        if reset_day:
            expected["last_reset_day"] = model.last_reset_day

        updated = await self._store.reset_and_increment(
            model.id,
            reset_minute=reset_minute,
            reset_day=reset_day,
            now=now,
            expected=expected,
        )
        if updated is not None:
            return updated
        # Another caller reset the window first (or the model was removed); re-read.
        return await self._store.get_model(model.id)
