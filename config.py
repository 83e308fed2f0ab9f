from typing import List, Set

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Chat Platform
    DISCORD_TOKEN: str = ""

    # License Server Configuration
    LICENSE_API_URL: str = "https://api.licensechain.app"
    LICENSE_API_KEY: str = ""
    LICENSE_API_TIMEOUT: int = 30
    LICENSE_APP_ID: str = ""  # Application whose licenses `/license list` reads
    CLIENT_IDENTIFIER: str = "LicenseChain-Discord-Bot/1.0.0"

    # Permissions
    BOT_OWNER_ID: str = ""
    ADMIN_ROLE_IDS: str = ""  # Comma-separated role ids

    # Database
    DATABASE_URL: str = "sqlite:///./licensebot.db"

    # Webhooks
    WEBHOOK_SECRET: str = ""

    # Upstream fields compared against a caller when listing their licenses
    LICENSE_OWNER_FIELDS: str = "issuedTo,issuedEmail,email,userId,discordId"

    # Scheduled Jobs
    HEALTH_CHECK_INTERVAL_MINUTES: int = 15

    # Service
    HOST: str = "0.0.0.0"
    PORT: int = 3004
    LOG_LEVEL: str = "INFO"
    APP_VERSION: str = "1.0.0"

    @property
    def admin_role_ids(self) -> Set[str]:
        return {role.strip() for role in self.ADMIN_ROLE_IDS.split(",") if role.strip()}

    @property
    def owner_fields(self) -> List[str]:
        return [field.strip() for field in self.LICENSE_OWNER_FIELDS.split(",") if field.strip()]

settings = Settings()
