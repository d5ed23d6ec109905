from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str  # Comma-separated
    APP_AUTH_TOKEN_USER_MAP: Optional[str] = None  # token:user_id pairs, comma-separated
    APP_DEFAULT_USER_ID: str = "usr_dev"  # user for bearer tokens without a map entry

    # Todoist API
    TODOIST_API_BASE: str = "https://api.todoist.com/api/v1"
    TODOIST_TIMEOUT_SECONDS: int = 15
    TODOIST_MAX_RETRIES: int = 3
    TODOIST_RETRY_BACKOFF_SECONDS: float = 1.0
    TODOIST_PAGE_LIMIT: int = 200
    TODOIST_SYNC_SECRET: Optional[str] = None

    # Token encryption
    TODOIST_ENCRYPTION_KEY: Optional[str] = None  # legacy single key, registered as "default"
    TODOIST_ENCRYPTION_KEYS: Optional[str] = None  # key_id:hex pairs, comma-separated
    TODOIST_ENCRYPTION_KEY_ID: Optional[str] = None  # key used for new ciphertexts

    # Sync pass
    SYNC_STALE_AFTER_MINUTES: int = 15
    SYNC_PASS_TIMEOUT_SECONDS: int = 300
    SYNC_DEFAULT_PROJECT_LIMIT: int = 5
    MAPPING_MAX_ENTRIES: int = 500

    # Rate limit
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_SYNC_PER_WINDOW: int = 6

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def token_user_map(self) -> dict:
        if not self.APP_AUTH_TOKEN_USER_MAP:
            return {}
        mapping = {}
        for pair in self.APP_AUTH_TOKEN_USER_MAP.split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            token, user_id = pair.split(":", 1)
            token = token.strip()
            user_id = user_id.strip()
            if token and user_id:
                mapping[token] = user_id
        return mapping

    @property
    def encryption_keys(self) -> Dict[str, str]:
        """Ordered key_id -> hex key material; the legacy single key comes first."""
        keys: Dict[str, str] = {}
        if self.TODOIST_ENCRYPTION_KEY and self.TODOIST_ENCRYPTION_KEY.strip():
            keys["default"] = self.TODOIST_ENCRYPTION_KEY.strip()
        if not self.TODOIST_ENCRYPTION_KEYS:
            return keys
        for pair in self.TODOIST_ENCRYPTION_KEYS.split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            key_id, material = pair.split(":", 1)
            key_id = key_id.strip()
            material = material.strip()
            if key_id and material:
                keys[key_id] = material
        return keys

settings = Settings()
