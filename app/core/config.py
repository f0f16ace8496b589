from typing import Optional
from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    host: str = Field(default="localhost", alias="POSTGRES_HOST")
    port: int = Field(default=5432, alias="POSTGRES_DB_PORT")
    db_name: str = Field(default="quiz", alias="POSTGRES_DB_NAME")
    user: str = Field(default="postgres", alias="POSTGRES_DB_USER")
    password: str = Field(default="postgres", alias="POSTGRES_DB_PASSWORD")
    # Full SQLAlchemy URL; wins over the discrete fields (sqlite for local runs/tests)
    url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")

    @computed_field
    def connection_string(self) -> str:
        if self.url_override:
            return self.url_override
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"


class JWTSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    issuer: str = Field(default="https://auth.example.com", alias="JWT_ISSUER")
    application_id: str = Field(default="live-quiz", alias="JWT_APPLICATION_ID")
    token_lifetime_seconds: int = Field(
        default=3600, alias="JWT_TOKEN_LIFETIME_SECONDS"
    )
    key_file: Optional[str] = Field(default=None, alias="JWT_RSA_KEY_FILE")


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    name: str = Field(default="live-quiz", alias="APP_NAME")
    version: str = Field(default="v1", alias="API_VERSION")
    port: int = Field(default=9000, alias="APP_PORT")
    mode: str = Field(default="prod", alias="MODE")
    jwt_secret: str = Field(default="change-me", alias="JWT_SECRET")

    @computed_field
    def is_production(self) -> bool:
        return self.mode != "dev"

    @computed_field
    def is_testing(self) -> bool:
        return self.mode == "test"


class QuizSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    room_code_length: int = Field(default=6, alias="ROOM_CODE_LENGTH")
    room_code_attempts: int = Field(default=8, alias="ROOM_CODE_ATTEMPTS")
    display_name_max_length: int = Field(default=64, alias="DISPLAY_NAME_MAX_LENGTH")
    feed_queue_size: int = Field(default=256, alias="FEED_QUEUE_SIZE")
    create_tables: bool = Field(default=False, alias="DB_CREATE_TABLES")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=lambda: AppSettings())
    postgres: PostgresSettings = Field(default_factory=lambda: PostgresSettings())
    jwt: JWTSettings = Field(default_factory=lambda: JWTSettings())
    quiz: QuizSettings = Field(default_factory=lambda: QuizSettings())


settings = Settings()
