# opsconsole/core/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from loguru import logger
from pathlib import Path
import warnings

DEFAULT_SECRET_KEY = "!!!GENERATE_A_STRONG_SECRET_KEY_32_BYTES_HEX!!!"
PACKAGE_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_SKILLS_SECTION = """## Skills

### Orders Query Skill
- Use `list_orders` for searches, filtering, and pagination.
- Use `get_order` only when a single order is requested.
- Prefer one targeted call over multiple broad calls.

### Orders Mutation Skill
- Use `create_order` for new orders.
- Use `edit_order` for updates, only including changed fields.
- Never claim a write succeeded without tool confirmation.

### Financial Reporting Skill
- Use `financial_report` for revenue, product, city, and period analysis.
- Use `call_center_daily_report` and `call_center_monthly_report` for call center activity, and `merchant_report` for per-merchant breakdowns by status.
- Prefer report output over manual calculations.
- When report data is available, guide user to the Excel download button.

### Messaging Skill
- Use `send_whatsapp_message` to send WhatsApp messages.
- Use `send_email` for email requests (fallback: `send_grid_email`).
- Validate recipient intent and keep confirmation concise.
- If sending fails, return exact tool error and next fix step.

## Tool Efficiency Rules
- Do not repeat identical tool calls unless inputs changed.
- Ask one clarification question only when required fields are missing.
- Keep final answers concise and grounded only in tool results."""


def find_dotenv_path(filename: str = '.env', usecwd: bool = False) -> str | None:
    """Walks up from this file (or the CWD) looking for an env file."""
    start_dir = Path.cwd() if usecwd else Path(__file__).resolve().parent
    current_dir = start_dir
    for _ in range(10):
        env_path = current_dir / filename
        if env_path.is_file():
            return str(env_path)
        if current_dir.parent == current_dir:
            break
        current_dir = current_dir.parent
    env_path_cwd = Path.cwd() / filename
    if env_path_cwd.is_file():
        return str(env_path_cwd)
    return None


class Settings(BaseSettings):
    PROJECT_NAME: str = "OpsConsole"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    FRONTEND_ORIGIN: str = "http://localhost:5173"
    APP_TIMEZONE: str = "UTC"
    APP_BASE_URL: str = ""

    # Database & Queue
    MONGODB_URI: str = "mongodb://localhost:27017/opsconsole"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Security
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "500/minute"
    RATE_LIMIT_LOGIN: str = "10/minute"
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Ollama
    OLLAMA_BASE_URL: str = "http://127.0.0.1:11434"
    OLLAMA_MODEL: str = ""
    OLLAMA_TIMEOUT: int = 120
    OLLAMA_CONTEXT_WINDOW: int = 234000
    OLLAMA_SYSTEM_PROMPT: str | None = None
    OLLAMA_SKILLS_SECTION: str = DEFAULT_SKILLS_SECTION
    OLLAMA_SKILLS_PATH: str = str(PACKAGE_ROOT / "resources" / "skills")

    # Planner
    AGENT_PLANNER_ENABLED: bool = True
    AGENT_PLANNER_TIMEOUT: int | None = None

    # SendGrid
    SENDGRID_API_KEY: str | None = None
    SENDGRID_ENDPOINT: str = "https://api.sendgrid.com/v3/mail/send"
    SENDGRID_FROM_EMAIL: str | None = None
    SENDGRID_FROM_NAME: str | None = None
    SENDGRID_SANDBOX: bool = False
    SENDGRID_TIMEOUT: int = 15

    # WhatsApp providers
    WHATSAPP_PROVIDER: str = "meta"
    WHATSAPP_META_PHONE_NUMBER_ID: str | None = None
    WHATSAPP_META_ACCESS_TOKEN: str | None = None
    WHATSAPP_TWILIO_ACCOUNT_SID: str | None = None
    WHATSAPP_TWILIO_AUTH_TOKEN: str | None = None
    WHATSAPP_TWILIO_FROM: str | None = None
    WHATSAPP_AT_USERNAME: str | None = None
    WHATSAPP_AT_API_KEY: str | None = None
    WHATSAPP_AT_FROM: str | None = None
    WHATSAPP_CUSTOM_BASE_URL: str = "https://www.wasenderapi.com/api"
    WHATSAPP_CUSTOM_API_KEY: str | None = None
    WASENDERAPI_API_KEY: str | None = None
    WHATSAPP_CUSTOM_SEND_PATH: str = "/send-message"
    WHATSAPP_CUSTOM_AUTH_HEADER: str = "Authorization"
    WHATSAPP_CUSTOM_AUTH_PREFIX: str = "Bearer "
    WHATSAPP_CUSTOM_TO_KEY: str = "to"
    WHATSAPP_CUSTOM_MESSAGE_KEY: str = "text"
    WHATSAPP_TIMEOUT: int = 25

    # Media & notifications
    MEDIA_STORAGE_PATH: str = Field(default="storage/app/public")
    ORDER_CONTACT_PHONE: str = "0740801187"

    model_config = SettingsConfigDict(
        env_file=tuple(p for p in (find_dotenv_path('.env'), find_dotenv_path('.env.local')) if p),
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )

    @property
    def whatsapp_custom_api_key(self) -> str:
        return self.WHATSAPP_CUSTOM_API_KEY or self.WASENDERAPI_API_KEY or ""


@lru_cache()
def get_settings() -> Settings:
    """Loads and validates application settings."""
    logger.info("Loading application settings...")
    env_files_found = [p for p in [find_dotenv_path('.env'), find_dotenv_path('.env.local')] if p]
    if env_files_found:
        logger.info(f"Loading environment variables from: {', '.join(env_files_found)}")
    else:
        logger.warning("No .env file found. Loading settings from system environment variables only.")

    settings_instance = Settings()

    if settings_instance.SECRET_KEY == DEFAULT_SECRET_KEY:
        logger.warning("SECURITY WARNING: Using default SECRET_KEY. Generate a strong key (e.g., `openssl rand -hex 32`) and set it in your environment!")
        warnings.warn("SECURITY WARNING: Using default SECRET_KEY. Please generate and set a strong secret key!")

    if not settings_instance.OLLAMA_MODEL:
        logger.warning("OLLAMA_MODEL is not set. Chat endpoints will reject requests until it is configured.")

    logger.info("Settings loaded successfully.")
    return settings_instance


settings = get_settings()
