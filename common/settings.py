import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "marketplace")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    database_url: str = os.getenv("DATABASE_URL", "")

    # Marketplace policy
    claim_window_hours: int = int(os.getenv("CLAIM_WINDOW_HOURS", "24"))
    lock_period_days: int = int(os.getenv("LOCK_PERIOD_DAYS", "7"))
    price_floor: int = int(os.getenv("PRICE_FLOOR", "30"))
    unverified_price_ceiling: int = int(os.getenv("UNVERIFIED_PRICE_CEILING", "80"))
    min_withdraw_cents: int = int(os.getenv("MIN_WITHDRAW_CENTS", "100"))

    # Overdue escalation (amounts in cents)
    reminder_interval_minutes: int = int(os.getenv("REMINDER_INTERVAL_MINUTES", "5"))
    penalty_per_reminder_cents: int = int(os.getenv("PENALTY_PER_REMINDER_CENTS", "500"))
    max_penalty_cents: int = int(os.getenv("MAX_PENALTY_CENTS", "3000"))

    # Sweep timers (seconds)
    unlock_sweep_interval: float = float(os.getenv("UNLOCK_SWEEP_INTERVAL", "60"))
    expiry_sweep_interval: float = float(os.getenv("EXPIRY_SWEEP_INTERVAL", "60"))
    overdue_sweep_interval: float = float(os.getenv("OVERDUE_SWEEP_INTERVAL", "60"))

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

settings = Settings()
