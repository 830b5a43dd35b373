import sqlite3

from referrer_analytics.app import PIXEL_BYTES, _geoip_readers, get_country_from_ip


def rows(app):
    conn = sqlite3.connect(app.config["ANALYTICS_DB"])
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute("SELECT * FROM referrer_analytics ORDER BY id").fetchall()
    finally:
        conn.close()


def post_visit(client, referrer, url="https://example.com/post", **extra):
    return client.post("/visit", json={"referrer": referrer, "url": url, **extra})


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_pixel_logs_known_referrer(client, app):
    r = client.get(
        "/v.gif",
        query_string={"r": "https://www.google.com/search?q=x", "u": "https://example.com/a", "uid": "7"},
        headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
    )

    assert r.status_code == 200
    assert r.mimetype == "image/gif"
    assert r.data == PIXEL_BYTES
    assert "no-store" in r.headers["Cache-Control"]

    [row] = rows(app)
    assert row["referrer_host"] == "www.google.com"
    assert row["referrer_name"] == "Google"
    assert row["referrer_type"] == "organic"
    assert row["referrer_primary_url"] == "https://www.google.com/"
    assert row["url_destination"] == "https://example.com/a"
    assert row["visitor_ip"] == "198.51.100.4"
    assert row["user_id"] == 7


def test_pixel_destination_falls_back_to_referer_header(client, app):
    client.get("/v.gif", query_string={"r": "https://github.com/x"},
               headers={"Referer": "https://example.com/page"})
    assert rows(app)[0]["url_destination"] == "https://example.com/page"


def test_pixel_without_referrer_logs_nothing(client, app):
    r = client.get("/v.gif", query_string={"u": "https://example.com/a"})
    assert r.status_code == 200
    assert rows(app) == []


def test_visit_endpoint(client, app):
    r = post_visit(client, "https://css-tricks.com/article", user_id="3")
    assert r.get_json()["logged"] is True
    assert r.get_json()["id"] == 1

    r = post_visit(client, None)
    assert r.get_json() == {"ok": True, "logged": False, "id": None}

    [row] = rows(app)
    assert row["referrer_name"] == "CSS-Tricks"
    assert row["user_id"] == 3


def test_unknown_referrer_depends_on_track_all(client, app):
    post_visit(client, "https://unknownhost.com/")
    [row] = rows(app)
    assert row["referrer_host"] == "unknownhost.com"
    assert row["referrer_name"] == ""

    app.config["TRACK_ALL_REFERRERS"] = False
    r = post_visit(client, "https://unknownhost.com/")
    assert r.get_json()["logged"] is False
    assert len(rows(app)) == 1


def test_cors_headers_only_for_allowed_origin(client):
    r = client.options("/visit", headers={"Origin": "https://example.com"})
    assert r.headers["Access-Control-Allow-Origin"] == "https://example.com"

    r = client.options("/visit", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in r.headers


def test_admin_requires_token(client):
    assert client.get("/stats").status_code == 403
    assert client.get("/stats?token=wrong").status_code == 403
    assert client.post("/admin/sync").status_code == 403
    assert client.post("/admin/delete-log").status_code == 403
    assert client.get("/admin/settings").status_code == 403
    assert client.get("/api/report").status_code == 403
    assert client.get("/api/report", headers={"X-Analytics-Token": "secret"}).status_code == 200


def test_settings_override_and_resync(client, app):
    post_visit(client, "https://css-tricks.com/a")
    assert rows(app)[0]["referrer_name"] == "CSS-Tricks"

    r = client.put("/admin/settings?token=secret", json={
        "hosts": [{"host": "css-tricks.com", "type": "backlink", "name": "MySite"}],
    })
    assert r.status_code == 200
    assert r.get_json()["track_all_referrers"] == "enabled"
    assert r.get_json()["hosts"][0]["name"] == "MySite"

    r = client.post("/admin/sync?token=secret")
    data = r.get_json()
    assert data["synced"] is True
    assert data["updated"] == 1

    row = rows(app)[0]
    assert row["referrer_name"] == "MySite"
    assert row["referrer_primary_url"] == ""

    assert client.post("/admin/sync?token=secret").get_json()["updated"] == 0


def test_settings_rejects_bad_payload(client):
    r = client.put("/admin/settings?token=secret", json={"hosts": "css-tricks.com"})
    assert r.status_code == 400
    assert r.get_json()["ok"] is False

    r = client.put("/admin/settings?token=secret", json=["nope"])
    assert r.status_code == 400

    r = client.put("/admin/settings?token=secret", json={"track_all_referrers": "maybe"})
    assert r.status_code == 400


def test_sync_without_known_hosts_is_noop(client, app):
    post_visit(client, "https://www.google.com/")
    client.put("/admin/settings?token=secret", json={"track_all_referrers": "disabled"})

    r = client.post("/admin/sync?token=secret")

    assert r.get_json() == {"ok": True, "synced": False}
    assert rows(app)[0]["referrer_name"] == "Google"


def test_delete_log_then_empty_report(client, app):
    post_visit(client, "https://www.google.com/")
    post_visit(client, "https://unknownhost.com/")

    r = client.post("/admin/delete-log?token=secret")
    assert r.get_json() == {"ok": True, "deleted": 2}
    assert rows(app) == []

    report = client.get("/api/report?token=secret").get_json()
    assert report["total"] == 0
    assert report["referrers"] == []
    assert report["types"] == {}
    assert report["destinations"] == {}

    page = client.get("/stats?token=secret")
    assert page.status_code == 200
    assert b"No data to report yet." in page.data


def test_report_and_dashboard(client):
    post_visit(client, "https://www.google.com/", url="/a")
    post_visit(client, "https://www.google.com/", url="/b")
    post_visit(client, "https://unknownhost.com/", url="/a")

    report = client.get("/api/report?token=secret").get_json()
    assert report["total"] == 3
    assert report["referrers"][0]["name"] == "Google"
    assert report["referrers"][0]["count"] == 2
    assert report["types"] == {"organic": 2, "N/A": 1}
    assert report["destinations"] == {"/a": 2, "/b": 1}
    assert report["unknown"] == {"unknownhost.com": 1}
    assert report["countries"] == {"UNK": 3}

    page = client.get("/stats?token=secret")
    assert page.status_code == 200
    assert b"Top 100 Unknown Referrers" in page.data
    assert b"unknownhost.com" in page.data
    assert b"Google" in page.data


def test_dashboard_forms_redirect_back_to_stats(client, app):
    post_visit(client, "https://www.google.com/")

    page = client.get("/stats?token=secret")
    assert b'name="next" value="stats"' in page.data

    r = client.post("/admin/sync?token=secret", data={"next": "stats"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/stats?token=secret")

    r = client.post("/admin/delete-log?token=secret", data={"next": "stats"})
    assert r.status_code == 302
    assert rows(app) == []


def test_missing_geoip_database_is_not_cached(app, tmp_path):
    app.config["GEOIP_DB_PATH"] = str(tmp_path / "later.mmdb")
    with app.app_context():
        assert get_country_from_ip("198.51.100.4") == "UNK"
    assert app.config["GEOIP_DB_PATH"] not in _geoip_readers


def test_unknown_referrer_without_host_reported_as_na(client):
    post_visit(client, "not a url")

    report = client.get("/api/report?token=secret").get_json()

    assert report["unknown"] == {"N/A": 1}
    assert report["referrers"][0]["name"] == "N/A"
