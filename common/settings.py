import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    jwt_issuer: str = os.getenv("JWT_ISSUER", "reseller-hierarchy")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "companies")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    # Overrides the MYSQL_* composition when set (sqlite URLs are used in tests)
    database_url: Optional[str] = os.getenv("DATABASE_URL")

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    cache_enabled: bool = os.getenv("CACHE_ENABLED", "false").lower() in ("1", "true", "yes")
    cache_ttl_seconds: int = int(os.getenv("CACHE_TTL_SECONDS", "60"))

    store_retry_attempts: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    store_retry_base_delay: float = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.2"))

    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
