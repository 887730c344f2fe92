"""Generation-service adapter via litellm."""

from typing import List, Dict, Any, Optional
from dataclasses import dataclass

import litellm
litellm.suppress_debug_info = True


@dataclass
class LLMResponse:
    content: Optional[str] = None
    usage: Optional[Dict] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None


class LLMAdapter:
    """Unified LLM interface. Passes api_key/api_base directly to litellm,
    avoiding env-var pollution when switching between providers."""

    def __init__(self, model: str, temperature: float = 0.0,
                 max_tokens: int = 8096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.timeout = timeout

    def chat(self, messages: List[Dict[str, Any]], max_tokens: Optional[int] = None) -> LLMResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model, "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.timeout:
            kwargs["timeout"] = self.timeout

        try:
            response = litellm.completion(**kwargs)
        except litellm.exceptions.AuthenticationError as e:
            raise ConnectionError(f"Auth failed. Check API key.\n{e}")
        except litellm.exceptions.APIConnectionError as e:
            raise ConnectionError(f"Cannot connect: model={self.model}, base={self.api_base or 'default'}\n{e}")
        except Exception as e:
            raise ConnectionError(f"LLM error: {type(e).__name__}: {e}")

        choice = response.choices[0]

        usage = None
        if getattr(response, "usage", None):
            usage = {"input_tokens": response.usage.prompt_tokens or 0,
                     "output_tokens": response.usage.completion_tokens or 0,
                     "total_tokens": response.usage.total_tokens or 0}

        return LLMResponse(
            content=choice.message.content,
            usage=usage,
            model=getattr(response, "model", None) or self.model,
            stop_reason=getattr(choice, "finish_reason", None),
        )
