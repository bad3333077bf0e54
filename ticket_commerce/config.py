from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional

class Settings(BaseSettings):
    # Database
    database_url: Optional[str] = Field(default=None, alias='DATABASE_URL')
    db_user: str = Field(default='postgres', alias='DB_USER')
    db_host: str = Field(default='localhost', alias='DB_HOST')
    db_password: str = Field(default='', alias='DB_PASSWORD')
    db_port: int = Field(default=5432, alias='DB_PORT')
    db_name: str = Field(default='ticket_commerce', alias='DB_NAME')
    db_pool_min_size: int = Field(default=5, alias='DB_POOL_MIN_SIZE')
    db_pool_max_size: int = Field(default=30, alias='DB_POOL_MAX_SIZE')

    # Refund policy
    refund_child_policy: str = Field(default='proportional', alias='REFUND_CHILD_POLICY')
    refund_event_fee_on_full_refund: bool = Field(default=True, alias='REFUND_EVENT_FEE_ON_FULL_REFUND')
    refund_conflict_retries: int = Field(default=1, alias='REFUND_CONFLICT_RETRIES')

    # Reports
    report_default_page_size: int = Field(default=100, alias='REPORT_DEFAULT_PAGE_SIZE')
    report_max_page_size: int = Field(default=1000, alias='REPORT_MAX_PAGE_SIZE')

    # App settings
    app_env: str = Field(default="development", alias='APP_ENV')

    # FastAPI specific
    port: int = Field(default=8001, alias='FASTAPI_PORT')
    host: str = Field(default="0.0.0.0", alias='FASTAPI_HOST')
    debug: bool = Field(default=True, alias='DEBUG')

    # CORS configuration
    cors_origins: str = Field(default="*", alias='CORS_ORIGINS')

    # Discord webhook for configuration / reconciliation alarms
    discord_error_webhook_url: Optional[str] = Field(default=None, alias='DISCORD_ERROR_WEBHOOK_URL')

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def db_connection_params(self) -> dict:
        if self.database_url:
            return {"dsn": self.database_url}
        return {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "password": self.db_password,
            "database": self.db_name,
        }

settings = Settings()
