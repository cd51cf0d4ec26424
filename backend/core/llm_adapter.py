"""LLM adapter with Cerebras → Groq failover.

Cerebras is the primary (fast inference). On timeout or 5xx, falls back to Groq.
A provider without an API key is never built and is skipped.
4xx errors fail immediately; a bad request would be rejected by Groq too.
Streams only fail over before the first chunk; once tokens have reached the
caller, a broken stream is reported as unavailable.
"""

import os
from collections.abc import AsyncIterator

import structlog
from httpx import HTTPStatusError, ReadTimeout
from langchain_cerebras import ChatCerebras
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_groq import ChatGroq

logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """Non-retryable LLM error (e.g. 4xx bad request)."""
    pass


class LLMUnavailableError(Exception):
    """Both providers are down or timing out."""
    pass


def _status_code(error: Exception) -> int | None:
    """HTTP status of an SDK error, whichever client raised it."""
    if isinstance(error, HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


class LLMAdapter:
    """Wraps Cerebras + Groq with automatic failover."""

    def __init__(self):
        self.cerebras_key = os.environ.get("CEREBRAS_API_KEY", "")
        self.groq_key = os.environ.get("GROQ_API_KEY", "")

        self.cerebras_model_name = os.environ.get("CEREBRAS_MODEL", "gpt-oss-120b")
        self.groq_model_name = os.environ.get("GROQ_MODEL", "openai/gpt-oss-120b")

        self.temperature = float(os.environ.get("LLM_TEMPERATURE", "0.3"))
        self.max_tokens = int(os.environ.get("LLM_MAX_TOKENS", "2048"))
        self.timeout = int(os.environ.get("LLM_TIMEOUT", "30"))

        if not self.is_healthy():
            logger.warning("llm.no_api_keys")

        self.primary_llm = None
        if self.cerebras_key:
            self.primary_llm = ChatCerebras(
                api_key=self.cerebras_key,
                model=self.cerebras_model_name,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            )

        self.fallback_llm = None
        if self.groq_key:
            self.fallback_llm = ChatGroq(
                api_key=self.groq_key,
                model=self.groq_model_name,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            )

    def is_healthy(self) -> bool:
        """Check if at least one provider has a key configured.

        Returns:
            True if either Cerebras or Groq API key is set.
        """
        return bool(self.cerebras_key) or bool(self.groq_key)

    def _bind(self, model: BaseChatModel, tools: list[dict] | None):
        if tools:
            return model.bind_tools(tools, tool_choice="auto")
        return model

    def _check_fallback(self, error: Exception) -> None:
        """Raise LLMError for a 4xx from the primary; otherwise log and allow fallback."""
        status = _status_code(error)
        if status is not None and 400 <= status < 500:
            logger.error("llm.4xx", status=status)
            raise LLMError(f"Cerebras API rejected request ({status}): {error}")

        if status is not None:
            logger.warning("llm.5xx_fallback", status=status)
        elif isinstance(error, (ReadTimeout, TimeoutError)):
            logger.warning("llm.timeout_fallback", threshold=self.timeout)
        else:
            logger.warning("llm.unknown_fallback", error=str(error))

    def _require_fallback(self, primary_error: Exception | None) -> None:
        if self.fallback_llm is not None:
            return
        if primary_error is None:
            logger.error("llm.no_provider")
            raise LLMUnavailableError("No LLM provider is configured")
        logger.error("llm.no_fallback", error=str(primary_error))
        raise LLMUnavailableError(f"Cerebras failed and Groq is not configured: {primary_error}")

    async def ainvoke(self, messages: list[BaseMessage], tools: list[dict] | None = None) -> AIMessage:
        """Try Cerebras first, fall back to Groq on timeout/5xx.

        A provider without an API key is skipped.

        Args:
            messages: List of LangChain message objects to send.
            tools: Optional OpenAI-format tool declarations the model may call.

        Returns:
            AI response message from whichever provider succeeds.

        Raises:
            LLMError: If Cerebras returns a 4xx (no fallback attempted).
            LLMUnavailableError: If both providers fail or none is configured.
        """
        primary_error = None
        if self.primary_llm is not None:
            logger.debug("llm.invoke", provider="cerebras", model=self.cerebras_model_name,
                         tools=len(tools or []))
            try:
                return await self._bind(self.primary_llm, tools).ainvoke(messages)
            except Exception as e:
                self._check_fallback(e)
                primary_error = e

        self._require_fallback(primary_error)

        logger.info("llm.groq_fallback", model=self.groq_model_name)
        try:
            response = await self._bind(self.fallback_llm, tools).ainvoke(messages)
            logger.info("llm.groq_ok")
            return response

        except Exception as e:
            logger.error("llm.both_failed", error=str(e))
            raise LLMUnavailableError(f"Both primary and fallback LLMs failed: {e}")

    async def astream(
        self, messages: list[BaseMessage], tools: list[dict] | None = None,
    ) -> AsyncIterator[AIMessageChunk]:
        """Stream chunks from Cerebras, or from Groq if Cerebras fails before its first chunk.

        Raises:
            LLMError: If Cerebras returns a 4xx.
            LLMUnavailableError: If both providers fail, none is configured,
                or a stream breaks mid-way.
        """
        primary_error = None
        if self.primary_llm is not None:
            logger.debug("llm.stream", provider="cerebras", model=self.cerebras_model_name)

            started = False
            try:
                async for chunk in self._bind(self.primary_llm, tools).astream(messages):
                    started = True
                    yield chunk
                return
            except Exception as e:
                if started:
                    logger.error("llm.stream_broken", provider="cerebras", error=str(e))
                    raise LLMUnavailableError(f"Stream interrupted: {e}")
                self._check_fallback(e)
                primary_error = e

        self._require_fallback(primary_error)

        logger.info("llm.groq_fallback", model=self.groq_model_name, stream=True)
        try:
            async for chunk in self._bind(self.fallback_llm, tools).astream(messages):
                yield chunk
        except Exception as e:
            logger.error("llm.both_failed", error=str(e), stream=True)
            raise LLMUnavailableError(f"Both primary and fallback LLMs failed: {e}")
