
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    ALLOWED_ORIGINS: str = "*"

    # Полный URL имеет приоритет над DB_* параметрами
    DATABASE_URL: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "pdfwhisperer"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = "postgres"
    DB_AUTO_CREATE: bool = True

    # OpenAI: embeddings + streamed chat completions
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_EMBED_MODEL: str = "text-embedding-3-small"
    EMBED_DIM: int = 1536
    LLM_TEMPERATURE: float = 0.0

    # Vector index: "pinecone" or "memory"
    VECTOR_BACKEND: str = "pinecone"
    PINECONE_API_KEY: str = ""
    PINECONE_INDEX: str = "pdf-whisperer"

    # Upload service
    UPLOAD_BASE_URL: str = "https://uploadthing-prod.s3.us-west-2.amazonaws.com"
    # Общий секрет хука загрузки, пустой = проверка выключена
    UPLOAD_WEBHOOK_SECRET: str = ""
    MAX_FILE_SIZE_MB: int = 4

    HISTORY_LIMIT: int = 6
    RETRIEVAL_TOP_K: int = 4
    INFINITE_QUERY_LIMIT: int = 10

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    def file_url(self, key: str) -> str:
        return f"{self.UPLOAD_BASE_URL.rstrip('/')}/{key}"

settings = Settings()
