import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_ROOT = Path(__file__).resolve().parents[1]
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    data_dir: str = "../data"

    llm_provider: str = "openai"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    minimax_api_key: Optional[str] = None
    minimax_model: str = "MiniMax-M2.5"
    deepseek_api_key: Optional[str] = None
    deepseek_base_url: str = "https://api.deepseek.com"
    deepseek_model: str = "deepseek-chat"
    secondary_model: Optional[str] = None
    llm_temperature: float = 0.7
    llm_max_tokens: int = 4000

    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536

    connectivity_timeout_seconds: float = 30.0
    synthesis_timeout_seconds: float = 120.0
    synthesis_attempts: int = 3
    synthesis_max_tokens: int = 2500

    continuity_max_chapters: int = 5
    continuity_token_budget: int = 1200
    setting_max_count: int = 10
    setting_token_budget: int = 1500
    retrieval_top_k: int = 5
    retrieval_time_window: int = 6
    character_cap: int = 7
    character_floor: int = 3

    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )

    @property
    def chat_model(self) -> str:
        provider = (self.llm_provider or "").strip().lower()
        if provider == "minimax":
            return self.minimax_model
        if provider == "deepseek":
            return self.deepseek_model
        return self.openai_model

    @property
    def chat_api_key(self) -> Optional[str]:
        provider = (self.llm_provider or "").strip().lower()
        if provider == "minimax":
            return self.minimax_api_key
        if provider == "deepseek":
            return self.deepseek_api_key
        return self.openai_api_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logger = logging.getLogger("storyloom")
    if log_file:
        log_path = Path(log_file).expanduser().resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
            for handler in logger.handlers
        ):
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)
            logger.info("file logging enabled path=%s", log_path)
    return logger
