import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

from veil.models import DEFAULT_KEY_ALGORITHM, EnforcementMode


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./veil.db"
    log_level: str = "INFO"

    # Master key wrapping key material at rest (SQL key provider only)
    veil_master_key: str = ""
    kdf_iterations: int = 600_000

    default_key_algorithm: str = DEFAULT_KEY_ALGORITHM

    # Risk thresholds
    k_anonymity_threshold: int = 5
    l_diversity_threshold: int = 3
    t_closeness_threshold: float = 0.15

    # Technique defaults
    default_noise_range: float = 0.1
    default_mask_char: str = "*"

    # Tokenization
    default_token_prefix: str = "tok"

    # Consulted by calling pipelines only; the engine always raises.
    enforcement_mode: EnforcementMode = EnforcementMode.BLOCK

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
