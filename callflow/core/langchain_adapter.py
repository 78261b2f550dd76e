from __future__ import annotations

from typing import TYPE_CHECKING, Any

from langchain.chat_models import init_chat_model
from langchain_core.messages import HumanMessage, SystemMessage
from langfuse import get_client

from .llm import CompletionBackend

if TYPE_CHECKING:
    from langchain_core.language_models.chat_models import BaseChatModel

    from callflow.settings import Settings


def _content_text(content: Any) -> str:
    # Some providers return a list of content parts
    if isinstance(content, list):
        text = ""
        for item in content:
            if isinstance(item, dict) and "text" in item:
                text += item["text"]
            else:
                text += str(item)
        return text
    return str(content or "")


class LangChainCompletion(CompletionBackend):
    def __init__(
        self,
        chat_model: BaseChatModel,
        langfuse: Any | None = None,
        *,
        operation: str = "intent_classification",
    ) -> None:
        self._chat = chat_model
        self._operation = operation
        self._langfuse = langfuse if langfuse is not None else get_client()

    @property
    def model_name(self) -> str:
        """Get the model name from the underlying chat model."""
        for attr in ("model_name", "model", "_model_name"):
            value = getattr(self._chat, attr, None)
            if isinstance(value, str) and value:
                return value
        return self._chat.__class__.__name__

    async def complete(self, system_prompt: str, user_message: str) -> str:
        generation = self._langfuse.start_observation(
            name=self._operation,
            as_type="generation",
            model=self.model_name,
            input=user_message,
            metadata={"operation": self._operation},
        )
        try:
            result = await self._chat.ainvoke(
                [SystemMessage(content=system_prompt), HumanMessage(content=user_message)]
            )
            text = _content_text(getattr(result, "content", ""))
            usage = getattr(result, "usage_metadata", None) or {}
            generation.update(
                output=text,
                usage={
                    "input_tokens": usage.get("input_tokens", 0),
                    "output_tokens": usage.get("output_tokens", 0),
                    "total_tokens": usage.get("total_tokens", 0),
                }
                if usage
                else None,
            )
            generation.end()
            return text
        except Exception as e:
            generation.update(
                output=f"ERROR: {e}",
                metadata={"error": str(e), "error_type": type(e).__name__},
            )
            generation.end()
            raise


def build_classifier(settings: Settings) -> LangChainCompletion | None:
    """Return a classifier when a credential is configured, else None."""
    if not settings.classifier_enabled:
        return None
    chat = init_chat_model(
        settings.classifier_model,
        model_provider=settings.classifier_provider,
        temperature=0,
        max_tokens=settings.classifier_max_tokens,
        api_key=settings.openai_api_key,
    )
    return LangChainCompletion(chat)


def build_flow_drafter(settings: Settings) -> LangChainCompletion | None:
    """Return the model that drafts flows from a description, or None without a key."""
    if not settings.classifier_enabled:
        return None
    chat = init_chat_model(
        settings.generator_model,
        model_provider=settings.classifier_provider,
        temperature=settings.generator_temperature,
        max_tokens=settings.generator_max_tokens,
        api_key=settings.openai_api_key,
    )
    return LangChainCompletion(chat, operation="flow_generation")
