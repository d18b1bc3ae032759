from __future__ import annotations
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from gateway.schemas import GenerationResult


class ConfigurationError(Exception):
    """No usable credential (or other required setting) could be resolved."""

    status_code = 400


class ProviderError(Exception):
    """Upstream call failed or returned output that could not be used."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (status {self.status_code})"
        return self.message


class GenerationProvider(ABC):
    """Abstract base class for text-generation providers.

    Implementations hold no credential of their own: the caller resolves one
    per request and passes it in, since models of different owners may use
    different keys.
    """

    name: str = "provider"

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        credential: Optional[str],
        prompt: str,
        temperature: float = 0.7,
    ) -> "GenerationResult":
        """Run one JSON-mode generation and return text plus token usage."""

    async def aclose(self) -> None:
        """Release transport resources, if any."""
