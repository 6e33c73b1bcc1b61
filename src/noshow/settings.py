"""Application settings via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]


class Settings(BaseSettings):
    """Central configuration — all values from environment."""

    model_config = SettingsConfigDict(env_prefix="NOSHOW_")

    # Target environment
    environment: str = "dev"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Business identity used in rendered messages
    business_name: str = "Studio Bella"
    business_phone: str = "(11) 99999-9999"
    business_address: str = "Salon address"
    currency_symbol: str = "R$"
    date_format: str = "%d/%m/%Y"
    time_format: str = "%H:%M"

    # Intervention rules (JSON file; empty → built-in defaults)
    rules_path: str = ""

    # Risk profiles
    profile_history_limit: int = 50

    # Channel dispatch
    dispatch_timeout_seconds: float = 10.0

    # Record store (PostgreSQL when pg_dsn is set, in-memory otherwise)
    pg_dsn: str = ""
    store_max_retries: int = 2
    store_retry_backoff: list[float] = [0.2, 1.0]

    # Inbound replies look ahead this many hours for upcoming appointments
    upcoming_window_hours: int = 72

    # Twilio (SMS, WhatsApp, voice)
    twilio_enabled: bool = False
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_whatsapp_from: str = ""

    # Outbound webhook for email / payment / incentive / confirmation channels
    channel_webhook_url: str = ""
    channel_webhook_token: str = ""
