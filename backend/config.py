from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "holders.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"

_PUBLIC_RPC_URL = "https://ethereum-rpc.publicnode.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Load project-root .env first, then backend/.env as an override.
        env_file=(
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ethereum RPC
    ETH_RPC_URL: str = ""  # Empty = Alchemy when ALCHEMY_API_KEY is set, else public node
    ETH_RPC_FALLBACK_URLS: list[str] = [
        "https://ethereum-rpc.publicnode.com",
        "https://eth.llamarpc.com",
        "https://rpc.ankr.com/eth",
    ]
    ALCHEMY_API_KEY: Optional[str] = None
    ALCHEMY_NFT_API_URL: str = "https://eth-mainnet.g.alchemy.com/nft/v3"
    MULTICALL3_ADDRESS: str = "0xcA11bde05977b3631167028862bE2a173976CA11"
    RPC_TIMEOUT_SECONDS: float = 30.0

    # RPC batching / throttling
    RPC_BATCH_SIZE: int = 100  # Calls per multicall
    RPC_CONCURRENCY: int = 5  # In-flight multicalls
    RPC_REQUESTS_PER_SECOND: int = 25
    LOG_BLOCK_RANGE: int = 2000  # Max blocks per eth_getLogs
    LOG_FETCH_CONCURRENCY: int = 5
    REWARD_TOKENS_PER_CALL: int = 100  # Token ids per getRewards call

    # Retry
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 10.0

    # Cache
    CACHE_BACKEND: str = "sqlite"  # memory | sqlite | redis
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"
    REDIS_URL: str = "redis://localhost:6379/0"
    HOLDERS_CACHE_TTL_SECONDS: int = 0  # 0 = keep until overwritten

    # Population
    POPULATION_TIMEOUT_SECONDS: float = 600.0
    READ_WAIT_TIMEOUT_SECONDS: float = 25.0  # How long a GET waits for a cold cache
    HOLDERS_WARM_ON_STARTUP: bool = False
    HOLDERS_REFRESH_ENABLED: bool = False
    HOLDERS_REFRESH_INTERVAL_SECONDS: int = 900

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    CORS_ORIGINS: list[str] = ["*"]
    PORT: int = 8000

    @field_validator(
        "ETH_RPC_URL",
        "ALCHEMY_NFT_API_URL",
        "REDIS_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("CACHE_BACKEND", mode="before")
    @classmethod
    def _normalize_cache_backend(cls, value: object) -> object:
        text = str(value or "").strip().lower()
        if text not in {"memory", "sqlite", "redis"}:
            raise ValueError(f"CACHE_BACKEND must be memory, sqlite or redis, got {value!r}")
        return text

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            return f"{prefix}{absolute}"

        return text

    @model_validator(mode="after")
    def _default_rpc_url(self) -> "Settings":
        if not self.ETH_RPC_URL:
            if self.ALCHEMY_API_KEY:
                self.ETH_RPC_URL = f"https://eth-mainnet.g.alchemy.com/v2/{self.ALCHEMY_API_KEY}"
            else:
                self.ETH_RPC_URL = _PUBLIC_RPC_URL
        return self


settings = Settings()
