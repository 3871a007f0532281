import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    OLTP_DATABASE_URL: str = os.getenv("OLTP_DATABASE_URL", "sqlite://")
    WAREHOUSE_DATABASE_URL: str = os.getenv("WAREHOUSE_DATABASE_URL", "sqlite://")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    READMISSION_WINDOW_DAYS: int = int(os.getenv("READMISSION_WINDOW_DAYS", "30"))
    TOP_PAIRS_LIMIT: int = int(os.getenv("TOP_PAIRS_LIMIT", "20"))
    MIN_PAIR_ENCOUNTERS: int = int(os.getenv("MIN_PAIR_ENCOUNTERS", "2"))
    ZERO_DISCHARGE_POLICY: str = os.getenv("ZERO_DISCHARGE_POLICY", "omit")


settings = Settings()
