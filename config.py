"""Runtime settings read from the environment (and an optional .env file)."""

from dataclasses import dataclass
import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///ticketing.db"
    payment_api_url: str = ""
    payment_status_url: str = ""
    payment_timeout_seconds: int = 10
    payment_currency: str = "TZS"
    external_id_prefix: str = "TKT-"
    sms_api_url: str = ""
    sms_api_key: str = ""
    service_timezone: str = "Africa/Dar_es_Salaam"
    early_entry_minutes: int = 120
    min_code_length: int = 8
    otp_ttl_seconds: int = 600
    reconcile_interval_seconds: int = 0
    default_adult_capacity: int = 100
    default_student_capacity: int = 50
    default_child_capacity: int = 50
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            payment_api_url=os.getenv("PAYMENT_API_URL", ""),
            payment_status_url=os.getenv("PAYMENT_STATUS_URL", ""),
            payment_timeout_seconds=_int_env("PAYMENT_TIMEOUT_SECONDS", cls.payment_timeout_seconds),
            payment_currency=os.getenv("PAYMENT_CURRENCY", cls.payment_currency),
            external_id_prefix=os.getenv("EXTERNAL_ID_PREFIX", cls.external_id_prefix),
            sms_api_url=os.getenv("SMS_API_URL", ""),
            sms_api_key=os.getenv("SMS_API_KEY", ""),
            service_timezone=os.getenv("SERVICE_TIMEZONE", cls.service_timezone),
            early_entry_minutes=_int_env("EARLY_ENTRY_MINUTES", cls.early_entry_minutes),
            min_code_length=_int_env("MIN_CODE_LENGTH", cls.min_code_length),
            otp_ttl_seconds=_int_env("OTP_TTL_SECONDS", cls.otp_ttl_seconds),
            reconcile_interval_seconds=_int_env("RECONCILE_INTERVAL_SECONDS", cls.reconcile_interval_seconds),
            default_adult_capacity=_int_env("DEFAULT_ADULT_CAPACITY", cls.default_adult_capacity),
            default_student_capacity=_int_env("DEFAULT_STUDENT_CAPACITY", cls.default_student_capacity),
            default_child_capacity=_int_env("DEFAULT_CHILD_CAPACITY", cls.default_child_capacity),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=_int_env("PORT", cls.port),
        )
