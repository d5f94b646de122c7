import os
from dataclasses import dataclass
from typing import Optional

SERVICE_NAME = "products-service"


@dataclass(frozen=True)
class Settings:
    port: int
    api_prefix: str
    log_level: str
    log_file: Optional[str]

    # HANA connection sources, highest priority first
    hana_connection: Optional[str]
    hana_host: Optional[str]
    hana_port: Optional[str]
    hana_user: Optional[str]
    hana_password: Optional[str]
    hana_schema: Optional[str]
    vcap_services: Optional[str]

    hana_encrypt: bool
    hana_connect_timeout: float
    hana_query_timeout: float


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name, default)
    if v is None:
        return None
    v = v.strip()
    return v if v else None


def _getfloat(name: str, default: float) -> float:
    v = _getenv(name)
    try:
        return float(v) if v is not None else default
    except ValueError:
        return default


def get_settings() -> Settings:
    """
    Only place environment variables are read.
    Called per request so credentials injected after startup are picked up.
    """
    prefix = (_getenv("API_PREFIX") or "").rstrip("/")
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix

    return Settings(
        port=int(_getenv("PORT", "8080") or "8080"),
        api_prefix=prefix,
        log_level=(_getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
        log_file=_getenv("LOG_FILE"),
        hana_connection=_getenv("HANA_CONNECTION"),
        hana_host=_getenv("HANA_HOST"),
        hana_port=_getenv("HANA_PORT"),
        hana_user=_getenv("HANA_USER"),
        hana_password=_getenv("HANA_PASSWORD"),
        hana_schema=_getenv("HANA_SCHEMA"),
        vcap_services=_getenv("VCAP_SERVICES"),
        hana_encrypt=(_getenv("HANA_ENCRYPT", "true") or "true").lower() == "true",
        hana_connect_timeout=_getfloat("HANA_CONNECT_TIMEOUT", 5.0),
        hana_query_timeout=_getfloat("HANA_QUERY_TIMEOUT", 5.0),
    )
