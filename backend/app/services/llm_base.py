"""
NoteDigest Backend — Abstract Summarization LLM Interface
===========================================================

What:  Abstract base class defining the contract of the upstream client
       adapter used by the summarization pipeline.
Why:   The orchestrator must not know which provider it talks to. Tests plug
       in a scripted fake; production plugs in GeminiService. This is the
       Strategy design pattern.
How:   Concrete implementations inherit from LLMService and implement
       summarize() and health_check().
Who:   Called by SummarizationService on a cache miss after quota admission.
"""

from abc import ABC, abstractmethod

from app.schemas.summary import SummaryStyle, UpstreamSummary


class LLMService(ABC):
    """
    Abstract interface for AI-powered note summarization.

    Contract:
        - summarize() returns an UpstreamSummary or raises an UpstreamError
          subclass; no provider-specific exception escapes it
        - Implementations own their timeout and retry policy; callers never
          retry on top of them
        - Raw upstream error bodies are logged, never put into messages
    """

    @abstractmethod
    async def summarize(self, content: str, style: SummaryStyle) -> UpstreamSummary:
        """
        Summarize one note in the requested style.

        Args:
            content: Note text as written by the user (not normalized).
            style:   Requested summary style; selects the prompt template.

        Returns:
            UpstreamSummary with the summary text and, when the provider
            reports it, the number of tokens used.

        Raises:
            UpstreamTransientError: Retries exhausted, or circuit open.
            UpstreamThrottledError: The provider's own rate limit tripped.
            UpstreamPermanentError: Request rejected or response unusable.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the LLM service is reachable and operational.

        Must not consume generation quota. Returns True/False, never raises.
        """
        ...
