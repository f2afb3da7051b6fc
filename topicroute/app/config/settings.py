from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from topicroute.app.constants import DEFAULT_EXCHANGE


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    broker_host: str = Field("localhost", validation_alias="BROKER_HOST")
    broker_port: int = Field(5672, validation_alias="BROKER_PORT")
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    broker_vhost: str = Field("/", validation_alias="BROKER_VHOST")

    # Routes bind their queues to this topic exchange; it must already exist on the broker.
    exchange_name: str = Field(DEFAULT_EXCHANGE, validation_alias="EXCHANGE_NAME")
    prefetch_count: int = Field(10, validation_alias="PREFETCH_COUNT")

    transport_backend: str = Field("rabbitmq", validation_alias="TRANSPORT_BACKEND")

    initial_backoff_seconds: float = Field(0.5, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(10.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(5, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")
