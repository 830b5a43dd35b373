from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from referrer_analytics.app import app as flask_app
from referrer_analytics.referrers import Referrer
from referrer_analytics.store import ensure_schema, insert_visit


@pytest.fixture()
def db(tmp_path: Path):
    conn = sqlite3.connect(tmp_path / "log.sqlite3")
    conn.row_factory = sqlite3.Row
    ensure_schema(conn)
    yield conn
    conn.close()


@pytest.fixture()
def add_visit(db):
    """Insert a visit row directly, bypassing classification."""

    def _add(host="", type="", name="", primary_url="", destination="/", ip="203.0.113.7", flagged=False):
        referrer = Referrer(
            url=f"https://{host}/" if host else "",
            host=host,
            type=type,
            name=name,
            primary_url=primary_url,
            flagged=flagged,
        )
        return insert_visit(db, referrer=referrer, visitor_ip=ip, user_id=0, url_destination=destination)

    return _add


@pytest.fixture()
def app(tmp_path: Path):
    saved = dict(flask_app.config)
    flask_app.config.update(
        TESTING=True,
        ANALYTICS_DB=str(tmp_path / "app.sqlite3"),
        DASH_TOKEN="secret",
        TRACK_ALL_REFERRERS=True,
        TRUST_PROXY_HEADERS=True,
        GEOIP_DB_PATH="",
        CORS_ALLOW_ORIGINS=["https://example.com"],
    )
    yield flask_app
    flask_app.config.clear()
    flask_app.config.update(saved)


@pytest.fixture()
def client(app):
    return app.test_client()
