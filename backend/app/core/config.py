from typing import Annotated, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, AnyUrl, BeforeValidator


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",")]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    APP_NAME: str = "Agent Knowledge Service"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Knowledge base
    KNOWLEDGE_ENABLED: bool = True
    KNOWLEDGE_MAX_TOKENS: int = 50000
    KNOWLEDGE_TOKENS_PER_CHAR: float = 0.25
    MAX_UPLOAD_SIZE_MB: int = 50

    @computed_field  # type: ignore[prop-decorator]
    @property
    def MAX_UPLOAD_SIZE(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024

    # Storage backend: "local" or "gcp"
    STORAGE_TYPE: str = "local"
    LOCAL_STORAGE_PATH: str = "./knowledge"

    # Google Cloud Storage
    GCP_STORAGE_BUCKET: str = ""
    GCP_PROJECT_ID: str = ""
    GCP_KEY_FILE: str = ""
    GCP_CACHE_DIR: str = ""
    GCP_CACHE_TTL_SECONDS: int = 3600
    GCP_OPERATION_TIMEOUT_SECONDS: float = 30.0

    # Agent seeded into an empty registry
    DEFAULT_AGENT_ID: str = "default-bot"
    DEFAULT_AGENT_NAME: str = "Default Bot"
    DEFAULT_AGENT_DESCRIPTION: str = "Default agent"
    DEFAULT_TENANT_ID: str = "default"

    # OpenTelemetry
    TRACING_ENABLED: bool = False

    FRONTEND_HOST: str = "http://localhost:5173"
    BACKEND_CORS_ORIGINS: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = [
        "http://localhost:8000"
    ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ALL_CORS_ORIGINS(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
