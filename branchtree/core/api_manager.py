# file: branchtree/core/api_manager.py

import logging
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import litellm
from litellm import exceptions
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from branchtree.utils.config_loader import ConfigLoader
from branchtree.core.exceptions import (
    GenerationError,
    APIConnectionError,
    APITimeoutError,
    APIRateLimitError,
    APIAuthenticationError,
    APINotFoundError,
    APIConfigurationError,
    EmptyResponseError,
)

TITLE_PROMPT = (
    "Extract 3-5 key words or a short phrase (max 6 words) that best describes "
    "this user query. Return only the keywords/phrase, nothing else. Make it "
    "concise and descriptive:\n\n{prompt}"
)
MAX_TITLE_LENGTH = 50


@dataclass
class Completion:
    """Text produced by the generator plus what we know about how."""
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)

    def to_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"model": self.model}
        if self.usage:
            metadata["usage"] = dict(self.usage)
        return metadata


class ApiManager:
    """
    The text-generation collaborator, backed by LiteLLM.

    generate() is a plain request/response call: messages in, one
    Completion out, or a GenerationError subclass. Connection and rate
    limit errors are retried inside the call; a rate limit that survives
    the retries switches to the fallback model when one is configured.
    """
    def __init__(self, locator):
        self.locator = locator
        self.config: ConfigLoader = self.locator.resolve("config_loader")
        self.logger = logging.getLogger(self.__class__.__name__)

    def _models_config(self) -> Dict[str, Any]:
        return self.config.get_config("models_config.json")

    def _retrying(self) -> Retrying:
        models_config = self._models_config()
        return Retrying(
            wait=wait_exponential(
                multiplier=1,
                min=models_config.get("retry_wait_min_sec", 2),
                max=models_config.get("retry_wait_max_sec", 10),
            ),
            stop=stop_after_attempt(max(1, int(models_config.get("max_attempts", 4)))),
            reraise=True,
            retry=retry_if_exception_type((APIConnectionError, APIRateLimitError)),
        )

    def _completion_with_retry(self, **kwargs) -> Any:
        """Calls litellm.completion, retrying transient failures."""
        return self._retrying()(self._completion, **kwargs)

    def _completion(self, **kwargs) -> Any:
        """Single litellm.completion call with errors wrapped in our hierarchy."""
        self.logger.debug(f"Attempting litellm.completion for model: {kwargs.get('model')}")
        try:
            return litellm.completion(**kwargs)

        # Retriable errors
        except exceptions.RateLimitError as e:
            self.logger.warning(f"LiteLLM Rate Limit Error (will retry): {e}")
            raise APIRateLimitError(f"Rate limit exceeded: {e}") from e
        except exceptions.Timeout as e:
            self.logger.warning(f"LiteLLM Timeout: {e}")
            raise APITimeoutError(f"Request timed out: {e}") from e
        except exceptions.APIConnectionError as e:
            self.logger.warning(f"LiteLLM API Connection Error (will retry): {e}")
            raise APIConnectionError(f"Connection error: {e}") from e
        except exceptions.ServiceUnavailableError as e:
            self.logger.warning(f"LiteLLM Service Unavailable Error (will retry): {e}")
            raise APIConnectionError(f"Service unavailable: {e}") from e

        # Non-retriable errors
        except exceptions.AuthenticationError as e:
            self.logger.error(f"LiteLLM Authentication Error (non-retriable): {e}")
            raise APIAuthenticationError(f"Authentication failed: {e}") from e
        except exceptions.NotFoundError as e:
            self.logger.error(f"LiteLLM Not Found Error (non-retriable): {e}")
            raise APINotFoundError(f"Model or resource not found: {e}") from e
        except exceptions.BadRequestError as e:
            self.logger.error(f"LiteLLM Bad Request Error (non-retriable): {e}")
            raise APIConfigurationError(f"Invalid request: {e}") from e
        except Exception as e:
            self.logger.error(f"LiteLLM non-retriable error: {e}", exc_info=True)
            raise GenerationError(f"An unexpected API error occurred: {e}") from e

    def _get_completion_kwargs(self, provider_id: str, model_name: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """Builds the kwargs dictionary for a litellm.completion call."""
        if not provider_id or not model_name:
            self.logger.error("No provider or model specified for kwargs.")
            raise APIConfigurationError("Provider and model must be specified.")

        models_config = self._models_config()
        provider_config = models_config.get("providers", {}).get(provider_id, {})
        api_key = provider_config.get("api_key")
        base_url = provider_config.get("base_url")

        full_model_name = f"{provider_id}/{model_name}"
        self.logger.info(f"Preparing call for model: {full_model_name}")

        system_prompt = models_config.get("system_prompt")
        llm_messages = list(messages)
        if system_prompt:
            llm_messages = [{"role": "system", "content": system_prompt}] + llm_messages

        kwargs: Dict[str, Any] = {
            "model": full_model_name,
            "messages": llm_messages,
        }
        timeout = models_config.get("request_timeout_sec")
        if timeout:
            kwargs["timeout"] = timeout
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["api_base"] = base_url

        return kwargs

    def _to_completion(self, response: Any, requested_model: str) -> Completion:
        """Extracts content, model and token usage from a litellm response."""
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise EmptyResponseError(f"Malformed response from {requested_model}: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise EmptyResponseError(f"Model {requested_model} returned no content")

        model = getattr(response, "model", None)
        usage_obj = getattr(response, "usage", None)
        usage = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(usage_obj, key, None)
            if isinstance(value, int):
                usage[key] = value
        return Completion(
            content=content,
            model=model if isinstance(model, str) and model else requested_model,
            usage=usage,
        )

    def generate(self, messages: List[Dict[str, str]]) -> Completion:
        """
        Generates the next assistant message for the given role/content list.
        Raises a GenerationError subclass on failure.
        """
        models_config = self._models_config()
        active_provider = models_config.get("active_provider")
        active_model = models_config.get("active_model")

        if not active_provider or not active_model:
            self.logger.error("No active provider or model configured.")
            raise APIConfigurationError("No active provider or model is configured.")

        kwargs = self._get_completion_kwargs(active_provider, active_model, messages)
        try:
            response = self._completion_with_retry(**kwargs)
            return self._to_completion(response, kwargs["model"])

        except APIRateLimitError as e:
            fallback_provider = models_config.get("fallback_provider")
            fallback_model = models_config.get("fallback_model")

            if not fallback_provider or not fallback_model:
                self.logger.error("Rate limit hit, but no fallback provider/model configured.")
                raise

            self.logger.warning(
                f"Rate limit error with {active_provider}/{active_model} (Error: {e}). "
                f"Using fallback: {fallback_provider}/{fallback_model}"
            )
            fallback_kwargs = self._get_completion_kwargs(fallback_provider, fallback_model, messages)
            fallback_response = self._completion_with_retry(**fallback_kwargs)
            return self._to_completion(fallback_response, fallback_kwargs["model"])

    def generate_title(self, prompt: str) -> str:
        """
        Short conversation title derived from the first user prompt. Falls
        back to the prompt's first words when generation fails.
        """
        try:
            completion = self.generate([{"role": "user", "content": TITLE_PROMPT.format(prompt=prompt)}])
            title = completion.content.strip()
        except GenerationError as e:
            self.logger.warning(f"Title generation failed, using prompt words instead: {e}")
            words = " ".join(prompt.split()[:5])
            return words if words else "New Chat"

        title = re.sub(r"^[\"']|[\"']$", "", title).strip()
        if len(title) > MAX_TITLE_LENGTH:
            title = title[:MAX_TITLE_LENGTH - 3] + "..."
        if len(title) < 2:
            stripped = prompt.strip()
            title = stripped[:30].strip() + ("..." if len(stripped) > 30 else "")
        return title or "New Chat"
