'''
Holds all the configurations
'''
from decimal import Decimal
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """
    Manages application configuration using environment variables.
    """
    # Application Metadata
    APP_NAME: str = "Tuition Ledger Backend"
    APP_VERSION: str = "0.1.0"
    APP_DESCRIPTION: str = "Tuition ledger, payment allocation and receipt numbering service."
    TEST_MODE: bool = False

    # Database URL
    DATABASE_URL_PROD: str
    DATABASE_URL_TEST: str
    @property
    def database_url(self) -> str:
        """
        Dynamically returns the correct database URL based on the test_mode flag.
        """
        if self.TEST_MODE:
            return self.DATABASE_URL_TEST
        return self.DATABASE_URL_PROD

    # Connection pool (ignored by SQLite)
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    BACKEND_CORS_ORIGINS: list[str] = []

    # Ledger Settings
    RECEIPT_MAX_RETRIES: int = 3
    RECEIPT_NUMBER_PADDING: int = 4
    BALANCE_EPSILON: Decimal = Decimal("0.001")
    # When True, a payment writes the recomputed balance instead of previous - amount
    AUTHORITATIVE_BALANCE_WRITEBACK: bool = False
    REPORT_RECENT_PAYMENTS_LIMIT: int = 10

    class Config:
        env_file = ".env" # automatically loads the .env

# Create a single, importable instance of the settings
settings = Settings()
