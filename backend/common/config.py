from typing import List, Optional, Set
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    DATABASE_URL: str = "sqlite+aiosqlite:///./users.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    APP_AUTH_BEARER_TOKENS: str = ""  # Comma-separated
    APP_AUTH_TOKEN_USER_MAP: Optional[str] = None  # token:admin_id pairs, comma-separated
    LOG_LEVEL: str = "INFO"

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_COMMAND_TIMEOUT_SECONDS: int = 20
    TELEGRAM_BOT_USERNAME: Optional[str] = None
    TELEGRAM_ADMIN_IDS: Optional[str] = None  # Comma-separated chat ids
    TELEGRAM_PUBLIC_REGISTRATION_ENABLED: bool = True
    TELEGRAM_DEEPLINK_REGISTRATION_ENABLED: bool = False
    DEEPLINK_TOKEN_TTL_SECONDS: int = 300
    DIALOG_TTL_SECONDS: int = 900

    # Approval
    VERIFY_REGISTRATION: bool = False

    # Directory gateway
    DIRECTORY_API_BASE: str = "http://localhost:8090/api"
    DIRECTORY_API_TOKEN: Optional[str] = None
    DIRECTORY_TIMEOUT_SECONDS: float = 15.0
    TEAMTALK_DEFAULT_USER_RIGHTS: str = (
        "MULTI_LOGIN,VIEW_ALL_USERS,CREATE_TEMPORARY_CHANNEL,UPLOAD_FILES,DOWNLOAD_FILES,"
        "TRANSMIT_VOICE,TRANSMIT_VIDEOCAPTURE,TRANSMIT_DESKTOP,TRANSMIT_MEDIAFILE,"
        "TEXTMESSAGE_USER,TEXTMESSAGE_CHANNEL"
    )

    # Connection file
    TEAMTALK_SERVER_NAME: str = "TeamTalk Server"
    TEAMTALK_HOST: str = "localhost"
    TEAMTALK_PUBLIC_HOSTNAME: Optional[str] = None
    TEAMTALK_TCP_PORT: int = 10333
    TEAMTALK_UDP_PORT: Optional[int] = None
    TEAMTALK_ENCRYPTED: bool = False
    TEAMTALK_JOIN_CHANNEL: str = "/"
    TEAMTALK_JOIN_CHANNEL_PASSWORD: str = ""
    TEAMTALK_CLIENT_TEMPLATE_DIR: Optional[str] = None
    QUICK_CONNECT_LINK_ENABLED: bool = True

    # Web registration
    WEB_REGISTRATION_ENABLED: bool = False
    WEB_PUBLIC_BASE_URL: str = "http://localhost:8000"
    WEB_ONE_REGISTRATION_PER_IP: bool = True
    WEB_PROXY_HEADERS: bool = False
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REGISTER_PER_WINDOW: int = 5

    # Generated files and tokens
    TEMP_FILES_DIR: str = "temp_files"
    GENERATED_FILE_TTL_SECONDS: int = 600

    # Cleanup
    DB_CLEANUP_INTERVAL_SECONDS: int = 3600
    PENDING_REG_TTL_SECONDS: int = 604800
    REGISTERED_IP_TTL_SECONDS: int = 2592000
    PROVISION_CLAIM_TIMEOUT_SECONDS: int = 300

    # Ban sync
    BAN_SYNC_ENABLED: bool = True
    BAN_SYNC_INTERVAL_SECONDS: int = 300

    # Operations
    OPERATIONS_METRICS_WINDOW_HOURS: int = 24
    WORKER_ALERT_FAILURE_THRESHOLD: int = 5

    # Secrets
    PENDING_PASSWORD_KEY: Optional[str] = None  # Fernet key

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return _split_csv(self.APP_AUTH_BEARER_TOKENS)

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
    def admin_ids(self) -> Set[int]:
        ids = set()
        for raw in _split_csv(self.TELEGRAM_ADMIN_IDS):
            try:
                ids.add(int(raw))
            except ValueError:
                continue
        return ids

    @property
    def default_user_rights(self) -> List[str]:
        return [name.upper() for name in _split_csv(self.TEAMTALK_DEFAULT_USER_RIGHTS)]

    @property
    def teamtalk_udp_port(self) -> int:
        return self.TEAMTALK_UDP_PORT or self.TEAMTALK_TCP_PORT

    @property
    def teamtalk_public_host(self) -> str:
        return self.TEAMTALK_PUBLIC_HOSTNAME or self.TEAMTALK_HOST


settings = Settings()
