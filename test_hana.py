"""
Unit tests for HANA credential discovery and the products read.
The hdbcli connection is replaced by a fake DB-API connection.
"""
import json
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from loguru import logger
from unittest.mock import MagicMock, patch
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import Settings
from hana import (
    DEFAULT_PORT,
    PRODUCTS_QUERY,
    HanaConnectionParams,
    credentials_from_vcap,
    fetch_products,
    parse_connection_string,
    resolve_connection,
)


@pytest.fixture
def settings():
    return Settings(
        port=8080,
        api_prefix="",
        log_level="INFO",
        log_file=None,
        hana_connection=None,
        hana_host=None,
        hana_port=None,
        hana_user=None,
        hana_password=None,
        hana_schema=None,
        vcap_services=None,
        hana_encrypt=True,
        hana_connect_timeout=5.0,
        hana_query_timeout=5.0,
    )


@pytest.fixture
def log_lines():
    lines = []
    handler_id = logger.add(lambda msg: lines.append(str(msg)), level="DEBUG")
    yield lines
    logger.remove(handler_id)


def vcap(services):
    return json.dumps(services)


def fake_connection(rows=None, error=None):
    cursor = MagicMock()
    if error is not None:
        cursor.execute.side_effect = error
    cursor.fetchall.return_value = rows or []
    conn = MagicMock()
    conn.cursor.return_value = cursor
    return conn, cursor


class TestConnectionString:

    def test_parses_odbc_style_string(self):
        params = parse_connection_string(
            "Driver={HDBODBC};ServerNode=abc.hana.example.com:30015;UID=DBADMIN;PWD=s3cret;"
        )
        assert params == HanaConnectionParams(
            host="abc.hana.example.com", port=30015, user="DBADMIN", password="s3cret"
        )

    def test_keys_are_case_insensitive_and_options_read(self):
        params = parse_connection_string(
            "servernode=h:443;uid=u;pwd=p;CURRENTSCHEMA=CATALOG;ENCRYPT=false"
        )
        assert params.schema == "CATALOG"
        assert params.encrypt is False

    def test_default_port(self):
        params = parse_connection_string("serverNode=h;UID=u;PWD=p")
        assert params.host == "h"
        assert params.port == DEFAULT_PORT

    def test_incomplete_string(self):
        assert parse_connection_string("serverNode=h:443;UID=u") is None


class TestVcapServices:

    def test_finds_hana_group(self):
        payload = vcap({
            "xsuaa": [{"credentials": {"host": "wrong", "user": "x", "password": "y"}}],
            "hana": [{"credentials": {"host": "h", "port": "443", "user": "u", "password": "p", "schema": "S"}}],
        })
        params = credentials_from_vcap(payload)
        assert params == HanaConnectionParams(host="h", port=443, user="u", password="p", schema="S")

    def test_group_match_is_case_insensitive(self):
        payload = vcap({"My-HANA-Cloud": [{"credentials": {"hostname": "h", "username": "u", "password": "p"}}]})
        params = credentials_from_vcap(payload)
        assert (params.host, params.user) == ("h", "u")

    def test_hdi_field_names(self):
        payload = vcap({"hana": [{"credentials": {"host": "h", "port": 30015, "hdi_user": "HDI", "hdi_password": "hp"}}]})
        params = credentials_from_vcap(payload)
        assert (params.user, params.password, params.port) == ("HDI", "hp", 30015)

    def test_skips_incomplete_instances(self):
        payload = vcap({"hana": [
            {"credentials": {"host": "h1", "user": "u1"}},
            {"name": "no-credentials"},
            {"credentials": {"host": "h2", "user": "u2", "password": "p2"}},
        ]})
        assert credentials_from_vcap(payload).host == "h2"

    def test_no_hana_group(self):
        assert credentials_from_vcap(vcap({"postgres": [{"credentials": {"host": "h", "user": "u", "password": "p"}}]})) is None

    def test_malformed_payload_resolves_to_none(self, settings):
        assert resolve_connection(replace(settings, vcap_services="{not json")) is None


class TestResolveConnection:

    def test_nothing_configured(self, settings):
        assert resolve_connection(settings) is None

    def test_explicit_string_wins(self, settings):
        cfg = replace(
            settings,
            hana_connection="serverNode=explicit:1;UID=u;PWD=p",
            hana_host="discrete", hana_user="u", hana_password="p",
            vcap_services=vcap({"hana": [{"credentials": {"host": "bound", "user": "u", "password": "p"}}]}),
        )
        assert resolve_connection(cfg).host == "explicit"

    def test_discrete_vars_before_vcap(self, settings):
        cfg = replace(
            settings,
            hana_host="discrete", hana_port="30015", hana_user="u", hana_password="p", hana_schema="S",
            vcap_services=vcap({"hana": [{"credentials": {"host": "bound", "user": "u", "password": "p"}}]}),
        )
        params = resolve_connection(cfg)
        assert (params.host, params.port, params.schema) == ("discrete", 30015, "S")

    def test_discrete_vars_need_password(self, settings):
        cfg = replace(
            settings,
            hana_host="discrete", hana_user="u",
            vcap_services=vcap({"hana": [{"credentials": {"host": "bound", "user": "u", "password": "p"}}]}),
        )
        assert resolve_connection(cfg).host == "bound"

    def test_encrypt_setting_applies(self, settings):
        cfg = replace(settings, hana_host="h", hana_user="u", hana_password="p", hana_encrypt=False)
        assert resolve_connection(cfg).encrypt is False


class TestFetchProducts:

    @pytest.fixture
    def configured(self, settings):
        return replace(settings, hana_host="h", hana_port="443", hana_user="u", hana_password="topsecret")

    def test_no_credentials_is_unavailable(self, settings):
        with patch("hana._connect") as connect:
            assert fetch_products(settings) is None
        connect.assert_not_called()

    def test_rows_are_mapped(self, configured):
        created = datetime(2024, 5, 1, 12, 0, 0)
        conn, cursor = fake_connection([(2, "Mouse", Decimal("29.99"), created), (1, "Laptop", Decimal("999.99"), created)])
        with patch("hana._connect", return_value=conn):
            products = fetch_products(configured)

        cursor.execute.assert_called_once_with(PRODUCTS_QUERY)
        assert [(p.id, p.name, p.price) for p in products] == [(2, "Mouse", 29.99), (1, "Laptop", 999.99)]
        assert products[0].created_at == created.replace(tzinfo=timezone.utc)
        cursor.close.assert_called_once()
        conn.close.assert_called_once()

    def test_null_columns_get_defaults(self, configured):
        conn, _ = fake_connection([(None, None, None, None)])
        with patch("hana._connect", return_value=conn):
            product = fetch_products(configured)[0]
        assert (product.id, product.name, product.price) == (0, "", 0.0)
        assert product.created_at.tzinfo is not None

    def test_zero_rows_is_available(self, configured):
        conn, _ = fake_connection([])
        with patch("hana._connect", return_value=conn):
            assert fetch_products(configured) == []

    def test_connect_failure_is_unavailable(self, configured):
        with patch("hana._connect", side_effect=OSError("connection refused")):
            assert fetch_products(configured) is None

    def test_query_failure_closes_connection(self, configured):
        conn, cursor = fake_connection(error=RuntimeError("invalid table name"))
        with patch("hana._connect", return_value=conn):
            assert fetch_products(configured) is None
        cursor.close.assert_called_once()
        conn.close.assert_called_once()

    def test_malformed_row_is_unavailable(self, configured):
        conn, _ = fake_connection([("not-an-int", "x", 1, None)])
        with patch("hana._connect", return_value=conn):
            assert fetch_products(configured) is None
        conn.close.assert_called_once()

    def test_logs_redact_password(self, configured, log_lines):
        conn, _ = fake_connection([])
        with patch("hana._connect", return_value=conn):
            fetch_products(configured)
        joined = "\n".join(log_lines)
        assert "h:443 user=u" in joined
        assert "password=***" in joined
        assert "topsecret" not in joined
