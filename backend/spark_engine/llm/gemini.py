import logging
from typing import Optional

from google import genai
from google.genai import errors as genai_errors

from spark_engine.config import Settings, get_settings
from spark_engine.errors import ProviderError
from spark_engine.llm.provider import CompletionResult

logger = logging.getLogger(__name__)

_clients: dict[str, genai.Client] = {}


def get_client(settings: Optional[Settings] = None) -> genai.Client:
    settings = settings or get_settings()
    api_key = settings.get_api_key()
    client = _clients.get(api_key)
    if client is None:
        client = genai.Client(api_key=api_key)
        _clients[api_key] = client
    return client


def query_gemini(prompt: str, model: Optional[str] = None, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    model = model or settings.model
    try:
        response = get_client(settings).models.generate_content(
            model=model,
            contents=prompt,
        )
    except genai_errors.APIError as e:
        raise ProviderError(f"Gemini API error: {e.code} {e.message}", context={"model": model}) from e

    text = response.text
    if text is None:
        raise ProviderError("Gemini API error: empty response", context={"model": model})
    return text


class GeminiProvider:
    """AIProvider backed by the Gemini generate_content API."""

    def __init__(self, model: str, settings: Settings):
        self.model = model
        self.settings = settings

    def complete(self, prompt: str) -> CompletionResult:
        logger.debug("Gemini completion (model=%s, %d chars)", self.model, len(prompt))
        return CompletionResult(content=query_gemini(prompt, model=self.model, settings=self.settings))


class GeminiProviderFactory:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def create(self, model_override: Optional[str] = None) -> GeminiProvider:
        return GeminiProvider(model_override or self.settings.model, self.settings)
