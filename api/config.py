"""API configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://bloomdesk:bloomdesk@db:5432/bloomdesk"
    REDIS_URL: str = "redis://redis:6379/0"

    # Business calendar
    BUSINESS_TIMEZONE: str = "Africa/Johannesburg"
    PREBILL_WINDOW_DAYS: int = 5
    SITE_URL: str = "http://localhost:5173"

    # PayFast
    PAYFAST_MERCHANT_ID: str = ""
    PAYFAST_MERCHANT_KEY: str = ""
    PAYFAST_PASSPHRASE: str = ""
    PAYFAST_RETURN_URL: str = ""
    PAYFAST_CANCEL_URL: str = ""
    PAYFAST_NOTIFY_URL: str = ""
    PAYFAST_MODE: str = "sandbox"
    PAYFAST_VALID_HOSTS: list[str] = [
        "www.payfast.co.za",
        "sandbox.payfast.co.za",
        "w1w.payfast.co.za",
        "w2w.payfast.co.za",
    ]
    PAYFAST_IP_CACHE_TTL_SEC: int = 600
    PAYFAST_VALIDATE_TIMEOUT_SEC: float = 10.0
    DNS_TIMEOUT_SEC: float = 5.0
    # X-Forwarded-For is honoured only when the direct peer is one of these proxies
    TRUST_FORWARDED_FOR: bool = False
    TRUSTED_PROXIES: list[str] = []

    # Email collaborator
    EMAIL_API_URL: str = ""
    EMAIL_API_KEY: str = ""
    EMAIL_FROM: str = "Bethany Blooms <no-reply@bethanyblooms.co.za>"
    EMAIL_RETRY_DELAY_SEC: float = 2.0
    ADMIN_EMAIL: str = "admin@bethanyblooms.co.za"

    # Storage collaborator
    STORAGE_API_URL: str = ""
    STORAGE_API_KEY: str = ""
    STORAGE_RETRY_DELAY_SEC: float = 2.0

    # EFT bank details
    EFT_ACCOUNT_NAME: str = "Bethany Blooms"
    EFT_BANK_NAME: str = "Capitec Business"
    EFT_ACCOUNT_NUMBER: str = "1053441444"
    EFT_BRANCH_CODE: str = "450105"

    # Shared invoice/order numbering
    ORDER_COUNTER_NAME: str = "orderCounter"
    ORDER_COUNTER_START: int = 999

    CRON_SECRET: str = ""
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"

    @property
    def payfast_host(self) -> str:
        return "www.payfast.co.za" if self.PAYFAST_MODE.lower() == "live" else "sandbox.payfast.co.za"

    @property
    def payfast_mode(self) -> str:
        return "live" if self.PAYFAST_MODE.lower() == "live" else "sandbox"


settings = Settings()
