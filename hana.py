"""
HANA data access.

Rules:
- Credentials are resolved on every call, first match wins:
  HANA_CONNECTION, then HANA_HOST/HANA_USER/HANA_PASSWORD, then VCAP_SERVICES.
- `fetch_products` never raises. `None` means HANA is unavailable; an empty
  list means the query succeeded and the table is empty.
"""
import json
import time
from contextlib import closing
from dataclasses import dataclass
from datetime import timezone
from typing import Any, List, Optional

from loguru import logger
from prometheus_client import Histogram

from config import Settings
from models import Product, utcnow

DEFAULT_PORT = 443

PRODUCTS_QUERY = 'SELECT "ID", "name", "price", "createdAt" FROM "Products" ORDER BY "ID"'

HANA_QUERY_LATENCY = Histogram(
    "hana_query_duration_seconds",
    "HANA products query latency in seconds",
    ["outcome"]
)


@dataclass(frozen=True)
class HanaConnectionParams:
    host: str
    port: int
    user: str
    password: str
    schema: Optional[str] = None
    encrypt: bool = True

    def describe(self) -> str:
        """Summary safe for logs (password redacted)."""
        schema = self.schema or "-"
        return f"{self.host}:{self.port} user={self.user} schema={schema} encrypt={self.encrypt} password=***"


def _port(value: Any) -> int:
    if value is None or str(value).strip() == "":
        return DEFAULT_PORT
    return int(str(value).strip())


def _first(mapping: dict, *keys: str) -> Optional[str]:
    for key in keys:
        v = mapping.get(key)
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def parse_connection_string(value: str, encrypt: bool = True) -> Optional[HanaConnectionParams]:
    """Parse `serverNode=host:port;UID=user;PWD=secret[;currentSchema=S][;encrypt=true]`.

    Keys are case-insensitive. Unknown keys (e.g. `Driver={HDBODBC}`) are ignored.
    """
    fields = {}
    for part in value.split(";"):
        if "=" not in part:
            continue
        key, _, v = part.partition("=")
        fields[key.strip().lower()] = v.strip()

    node = fields.get("servernode", "")
    host, _, port = node.rpartition(":") if ":" in node else (node, "", "")
    user = fields.get("uid") or fields.get("user")
    password = fields.get("pwd") or fields.get("password")
    if not (host and user and password):
        return None

    if "encrypt" in fields:
        encrypt = fields["encrypt"].lower() == "true"
    return HanaConnectionParams(
        host=host,
        port=_port(port),
        user=user,
        password=password,
        schema=fields.get("currentschema") or None,
        encrypt=encrypt,
    )


def credentials_from_vcap(payload: str, encrypt: bool = True) -> Optional[HanaConnectionParams]:
    """Scan service groups whose name contains 'hana' for a usable credentials block."""
    services = json.loads(payload)
    if not isinstance(services, dict):
        return None

    for group, instances in services.items():
        if "hana" not in group.lower() or not isinstance(instances, list):
            continue
        for instance in instances:
            if not isinstance(instance, dict):
                continue
            creds = instance.get("credentials")
            if not isinstance(creds, dict):
                continue
            host = _first(creds, "host", "hostname")
            user = _first(creds, "user", "username", "hdi_user")
            password = _first(creds, "password", "hdi_password")
            if host and user and password:
                return HanaConnectionParams(
                    host=host,
                    port=_port(creds.get("port")),
                    user=user,
                    password=password,
                    schema=_first(creds, "schema"),
                    encrypt=encrypt,
                )
    return None


def resolve_connection(settings: Settings) -> Optional[HanaConnectionParams]:
    if settings.hana_connection:
        return parse_connection_string(settings.hana_connection, settings.hana_encrypt)

    if settings.hana_host and settings.hana_user and settings.hana_password:
        return HanaConnectionParams(
            host=settings.hana_host,
            port=_port(settings.hana_port),
            user=settings.hana_user,
            password=settings.hana_password,
            schema=settings.hana_schema,
            encrypt=settings.hana_encrypt,
        )

    if settings.vcap_services:
        try:
            return credentials_from_vcap(settings.vcap_services, settings.hana_encrypt)
        except ValueError as e:
            logger.warning(f"Failed to parse VCAP_SERVICES: {e}")
    return None


def _connect(params: HanaConnectionParams, timeout: float):
    from hdbcli import dbapi

    kwargs = {
        "address": params.host,
        "port": params.port,
        "user": params.user,
        "password": params.password,
        "encrypt": params.encrypt,
        "connectTimeout": int(timeout * 1000),
    }
    if params.schema:
        kwargs["currentSchema"] = params.schema
    return dbapi.connect(**kwargs)


def _to_product(row) -> Product:
    id_, name, price, created_at = row
    if created_at is None:
        created_at = utcnow()
    elif created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Product(
        id=int(id_) if id_ is not None else 0,
        name=str(name) if name is not None else "",
        price=float(price) if price is not None else 0.0,
        created_at=created_at,
    )


def fetch_products(settings: Settings) -> Optional[List[Product]]:
    """Read the Products table. Returns None when HANA can't be used."""
    start_time = time.time()
    try:
        params = resolve_connection(settings)
        if params is None:
            logger.info("No HANA credentials found, using mock data")
            return None

        logger.info(f"Connecting to HANA: {params.describe()}")
        with closing(_connect(params, settings.hana_connect_timeout)) as conn:
            with closing(conn.cursor()) as cur:
                cur.execute(PRODUCTS_QUERY)
                rows = cur.fetchall()

        products = [_to_product(row) for row in rows]
        HANA_QUERY_LATENCY.labels(outcome="success").observe(time.time() - start_time)
        logger.info(f"Retrieved {len(products)} products from HANA")
        return products
    except Exception as e:
        HANA_QUERY_LATENCY.labels(outcome="error").observe(time.time() - start_time)
        logger.error(f"HANA read failed: {type(e).__name__}: {e}")
        return None
