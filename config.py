from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Remote ledger object (GitHub contents API)
    GITHUB_TOKEN: str = ""
    GITHUB_OWNER: str = "marcodalpont"
    GITHUB_REPO: str = "dp-biotech-server"
    GITHUB_BRANCH: str = "main"
    GITHUB_FILE_PATH: str = "database.csv"
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_API_TIMEOUT: int = 30

    # Ledger
    LEDGER_BACKEND: str = "github"  # github | memory
    COMMIT_CONFLICT_RETRIES: int = 0  # 0 = log and drop
    RESYNC_INTERVAL_MINUTES: int = 10  # 0 disables the resync job

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CHECKOUT_CURRENCY: str = "eur"
    CHECKOUT_SUCCESS_URL: str = "https://www.dpbiotech.com/success.html"
    CHECKOUT_CANCEL_URL: str = "https://www.dpbiotech.com/checkout.html"

    # Service
    SERVICE_NAME: str = "DP Biotech License Ledger"
    APP_VERSION: str = "1.0.0"
    PORT: int = 4242
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()
