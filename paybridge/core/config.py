from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "paybridge"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/paybridge.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Public base URL used to build processor callback URLs
    API_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"

    # M-Pesa (Daraja) settings
    mpesa_environment: str = "sandbox"  # "sandbox" or "production"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_short_code: str = ""
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""  # Full override for the STK callback URL
    mpesa_token_reuse_seconds: int = 3000  # Tokens live 60 minutes, reuse for 50

    # Paystack settings
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_currency: str = "KES"
    paystack_callback_url: str = ""  # Where Paystack redirects the payer afterwards
    paystack_verify_signatures: bool = True

    # Outbound processor calls
    processor_timeout_seconds: float = 30.0
    processor_max_retries: int = 3
    processor_retry_base_delay: float = 1.0

    # Reconciliation sweep
    reconcile_pending_after_minutes: int = 5
    abandon_uncorrelated_after_minutes: int = 30
    reconcile_batch_size: int = 100

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_environment.lower() == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


settings = Settings()
