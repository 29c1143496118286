from typing import AsyncIterator, Dict, List

from openai import AsyncOpenAI, OpenAIError

from ..config import settings


class LLMConfigurationError(Exception):
    """Ошибка конфигурации LLM (отсутствует API ключ и т.д.)"""
    pass


class LLMServiceError(Exception):
    """Ошибка при обращении к LLM сервису"""
    pass


_client: AsyncOpenAI | None = None
def get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        if not settings.OPENAI_API_KEY:
            raise LLMConfigurationError(
                "OPENAI_API_KEY is not set. Please configure OPENAI_API_KEY in environment variables."
            )
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


class OpenAIChatModel:
    def __init__(self, model: str | None = None, temperature: float | None = None):
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature

    async def stream_chat(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Yield completion text deltas as the model produces them."""
        if not messages:
            raise ValueError("messages must be a non-empty list")
        client = get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                stream=True,
            )
        except OpenAIError as e:
            raise LLMServiceError(f"OpenAI API error: {e}") from e

        # Ошибки посреди потока не перехватываем: клиент увидит оборванный ответ
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


_chat_model: OpenAIChatModel | None = None
def get_chat_model() -> OpenAIChatModel:
    global _chat_model
    if _chat_model is None:
        _chat_model = OpenAIChatModel()
    return _chat_model
