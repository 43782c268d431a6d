from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Meal Plan Engine"
    DATABASE_URL: str = "sqlite:///data/meal_planner.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
        "https://localhost:8081",
    ]
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = (
        "default-src 'self'; "
        "img-src 'self' data: https:; "
        "connect-src 'self' https:; "
        "frame-ancestors 'none'; "
        "base-uri 'self';"
    )
    LOG_LEVEL: str = "INFO"
    DEFAULT_TIMEZONE: str = "UTC"
    DEFAULT_PLAN_SPAN_DAYS: int = 7
    MAX_PLAN_SPAN_DAYS: int = 60
    DAY_PICKER_FALLBACK_DAYS: int = 3
    EXTRA_MEAL_TYPES: list[str] = []
    ACHIEVEMENT_SYNC_ENABLED: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def meal_types(self) -> tuple[str, ...]:
        base = ["breakfast", "lunch", "dinner", "snack"]
        for raw in self.EXTRA_MEAL_TYPES:
            name = str(raw or "").strip().lower()
            if name and name not in base:
                base.append(name)
        return tuple(base)

    def validate_configuration(self) -> None:
        errors: list[str] = []
        if self.DEFAULT_PLAN_SPAN_DAYS < 1:
            errors.append("DEFAULT_PLAN_SPAN_DAYS must be at least 1")
        if self.MAX_PLAN_SPAN_DAYS < self.DEFAULT_PLAN_SPAN_DAYS:
            errors.append("MAX_PLAN_SPAN_DAYS must not be smaller than DEFAULT_PLAN_SPAN_DAYS")
        if self.DAY_PICKER_FALLBACK_DAYS < 1:
            errors.append("DAY_PICKER_FALLBACK_DAYS must be at least 1")
        if self.is_production_like:
            if "*" in self.CORS_ORIGINS:
                errors.append("CORS_ORIGINS must not contain '*' in production-like environments")
            if ":memory:" in self.DATABASE_URL:
                errors.append("DATABASE_URL must not be an in-memory database in production-like environments")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
