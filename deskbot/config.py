"""Application settings loaded from environment variables.

Service credentials and operational tunables live here.
Helpdesk-specific data (menu categories, status labels) lives in
``deskbot/catalog.py``.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # GLPI REST API
    GLPI_API_URL: str = "http://localhost/glpi/apirest.php"
    GLPI_APP_TOKEN: str = ""
    GLPI_USER_TOKEN: str = ""
    GLPI_TIMEOUT_SECONDS: float = 30.0

    # Chat transport bridge (WhatsApp gateway)
    CHAT_BRIDGE_URL: str = "http://localhost:8080"
    CHAT_BRIDGE_TOKEN: str = ""
    CHANNEL_NAME: str = "WhatsApp"

    # Conversation rules
    INACTIVITY_MINUTES: float = 5
    TITLE_MAX_CHARS: int = 70
    DESCRIPTION_MIN_CHARS: int = 20
    CANCEL_TOKEN: str = "0"
    KNOWLEDGE_BASE_URL: str = "http://localhost/knowledge-base"

    # Address book persistence
    USER_EMAILS_PATH: str = "data/user_emails.json"

    # Ticket-update webhooks
    BOT_INITIATED_UPDATE_COOLDOWN_SECONDS: float = 30.0
    WEBHOOK_PROCESSING_DELAY_SECONDS: float = 7.0

    # Application
    LOG_LEVEL: str = "INFO"

    # Mock / Development
    MOCK_MODE: bool = False

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
