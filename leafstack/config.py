import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    ping_message: str = os.getenv("PING_MESSAGE", "ping")

    # Database
    mongodb_url: str = os.getenv("MONGODB_URL", "mongodb://mongo:27017")
    database_name: str = os.getenv("MONGODB_DATABASE", "library_db")

    # Lending
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

    # Security
    token_ttl_hours: int = int(os.getenv("TOKEN_TTL_HOURS", "24"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))
    default_member_password: str = os.getenv("DEFAULT_MEMBER_PASSWORD", "password123")

    # Default admin account created on first start
    admin_seed_enabled: bool = _env_bool("ADMIN_SEED_ENABLED", "true")
    admin_username: str = os.getenv("ADMIN_USERNAME", "admin")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@leafstack.local")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin12345")
    admin_name: str = os.getenv("ADMIN_NAME", "System Administrator")

    # Demo catalog loaded into an empty database
    seed_sample_books: bool = _env_bool("SEED_SAMPLE_BOOKS", "false")


settings = Settings()
