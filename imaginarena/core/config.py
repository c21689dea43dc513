from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Настройки приложения и окружения.
    app_name: str = "ImaginArena"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = True
    log_level: str = "INFO"
    database_url: str
    secret_key: str = "change_me"
    # Ключ, с которым провайдер идентификации передает id пользователя.
    identity_provider_key: str = "change_me_too"

    # Внешнее хранилище картинок.
    blob_store_url: str = "http://localhost:9000/storage/v1/object"
    blob_public_url: str = "http://localhost:9000/storage/v1/object/public"
    blob_bucket: str = "images"
    blob_store_token: str = ""
    blob_upload_timeout: float = 30.0

    # Таймауты и задержки игрового процесса.
    profile_lookup_timeout: float = 2.0
    coin_toss_delay_seconds: float = 3.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
