"""
TaskPilot Backend - Abstract LLM Service Interface
===================================================

What:  Contract for text-completion providers used by the AI command service.
Why:   AiCommandService depends on this interface only, so tests can pass a
       stub and the provider (Gemini today) can be swapped without touching
       command handling.
"""

from abc import ABC, abstractmethod
from typing import Optional


class LLMService(ABC):
    """
    Contract:
        - complete() returns the model's text reply, stripped
        - implementations handle their own retries and circuit breaking
        - provider errors surface as LLMServiceError / CircuitBreakerOpenError
    """

    @abstractmethod
    async def complete(self, prompt: str, system_instruction: Optional[str] = None) -> str:
        """
        Send one prompt and return the reply text ("" when the model says nothing).

        Raises:
            LLMServiceError: the provider failed after all retries
            CircuitBreakerOpenError: recent failures tripped the breaker
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability test that does not consume generation quota."""
        ...
