import hmac
import logging
import os
import sqlite3
from dataclasses import asdict

from flask import Flask, request, abort, Response, g, render_template_string, jsonify, current_app, redirect, url_for

import geoip2.database
import geoip2.errors

from .options import InvalidOptions, Options, load_options, parse_flag, parse_hosts, save_options
from .referrers import classify_referrer, load_catalog, resolve_referrers
from .reports import (
    build_sparkline,
    most_common,
    parse_log,
    tally_countries,
    top_referrers,
    top_unknown_referrers,
    visits_per_day,
)
from .store import delete_log, ensure_schema, get_log, get_recent, insert_visit
from .sync import sync_log

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
DB_PATH = os.environ.get("REFERRER_ANALYTICS_DB", "referrer_analytics.sqlite3")
DASH_TOKEN = os.environ.get("ANALYTICS_DASH_TOKEN", "changeme")
TRACK_ALL_REFERRERS = os.environ.get("ANALYTICS_TRACK_ALL", "enabled")
TRUST_PROXY_HEADERS = os.environ.get("ANALYTICS_TRUST_PROXY", "true")
GEOIP_DB_PATH = os.environ.get("GEOIP_DB_PATH", "/geoip/GeoLite2-Country.mmdb")

# CORS allowlist for sites that post visits from another origin
CORS_ALLOW_ORIGINS = os.environ.get("CORS_ALLOW_ORIGINS", "").split(",")
CORS_ALLOW_ORIGINS = [o.strip() for o in CORS_ALLOW_ORIGINS if o.strip()]

# 1x1 transparent gif bytes (tracking pixel)
PIXEL_BYTES = (
    b"GIF89a"
    b"\x01\x00\x01\x00"
    b"\x80"
    b"\x00"
    b"\x00"
    b"\x00\x00\x00"
    b"\xff\xff\xff"
    b"\x21\xf9\x04\x01\x00\x00\x00\x00"
    b"\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00"
    b"\x02\x02\x44\x01\x00"
    b"\x3b"
)

RECENT_LIMIT = 50

app = Flask(__name__)
app.config.update(
    ANALYTICS_DB=DB_PATH,
    DASH_TOKEN=DASH_TOKEN,
    TRACK_ALL_REFERRERS=parse_flag(TRACK_ALL_REFERRERS),
    TRUST_PROXY_HEADERS=parse_flag(TRUST_PROXY_HEADERS),
    GEOIP_DB_PATH=GEOIP_DB_PATH,
    CORS_ALLOW_ORIGINS=CORS_ALLOW_ORIGINS,
)

_geoip_readers = {}
def get_geoip_reader():
    path = current_app.config["GEOIP_DB_PATH"]
    if path not in _geoip_readers and path and os.path.exists(path):
        _geoip_readers[path] = geoip2.database.Reader(path)
    return _geoip_readers.get(path)


# -----------------------------------------------------------------------------
# DB helpers
# -----------------------------------------------------------------------------
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["ANALYTICS_DB"])
        g.db.row_factory = sqlite3.Row
    return g.db

@app.teardown_appcontext
def close_db(exc):
    db = g.pop("db", None)
    if db:
        db.close()

@app.before_request
def before():
    ensure_schema(get_db())


def default_options() -> Options:
    return Options(track_all_referrers=current_app.config["TRACK_ALL_REFERRERS"])

def current_referrers(db):
    """
    Current options plus the host -> definition map built from them.
    """
    options = load_options(db, default_options())
    referrers = resolve_referrers(load_catalog(), options.hosts, options.track_all_referrers)
    return options, referrers


# -----------------------------------------------------------------------------
# Request context
# -----------------------------------------------------------------------------
def client_ip(req) -> str:
    if current_app.config["TRUST_PROXY_HEADERS"]:
        xff = req.headers.get("X-Forwarded-For")
        if xff:
            # left-most entry is the original client
            return xff.split(",")[0].strip()
    return req.remote_addr or ""

def get_country_from_ip(raw_ip: str) -> str:
    """
    Return ISO country code from IP using local MaxMind DB.
    """
    reader = get_geoip_reader()
    if reader is None or not raw_ip:
        return "UNK"
    try:
        resp = reader.country(raw_ip)
        code = resp.country.iso_code or resp.registered_country.iso_code
        return code if code else "UNK"
    except (geoip2.errors.AddressNotFoundError, ValueError):
        return "UNK"

def pick_cors_origin(request_origin: str | None) -> str | None:
    """
    Return allowed origin if it matches our allowlist.
    """
    if not request_origin:
        return None
    for allowed in current_app.config["CORS_ALLOW_ORIGINS"]:
        if request_origin == allowed:
            return allowed
    return None

@app.after_request
def add_cors_headers(resp):
    origin = pick_cors_origin(request.headers.get("Origin"))

    if origin:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "false"
        resp.headers["Access-Control-Allow-Methods"] = request.headers.get(
            "Access-Control-Request-Method", "GET,POST,OPTIONS"
        )
        resp.headers["Access-Control-Allow-Headers"] = request.headers.get(
            "Access-Control-Request-Headers", "Content-Type"
        )
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp

def require_token():
    token = request.args.get("token") or request.headers.get("X-Analytics-Token", "")
    if not hmac.compare_digest(token.encode("utf-8"), current_app.config["DASH_TOKEN"].encode("utf-8")):
        abort(403)


# -----------------------------------------------------------------------------
# Tracking
# -----------------------------------------------------------------------------
def log_visit(db, *, referrer_url, url_destination, visitor_ip, user_id=0):
    """
    Classify a visit's referrer and store it.
    Returns the new row id, or None when the visit is not worth keeping.
    """
    options, referrers = current_referrers(db)
    referrer = classify_referrer(referrer_url, referrers, options.track_all_referrers)
    if referrer is None:
        logger.debug("Visit to %s not logged (referrer %r)", url_destination, referrer_url)
        return None

    return insert_visit(
        db,
        referrer=referrer,
        visitor_ip=visitor_ip,
        user_id=user_id,
        url_destination=url_destination,
    )


@app.route("/v.gif")
def pixel():
    """
    Tracking pixel endpoint. Include it like:
      <img src="/analytics/v.gif?u=<page url>&r=<document.referrer>">
    The page url falls back to the Referer header of the pixel request.
    """
    log_visit(
        get_db(),
        referrer_url=request.args.get("r"),
        url_destination=request.args.get("u") or request.headers.get("Referer", ""),
        visitor_ip=client_ip(request),
        user_id=request.args.get("uid", default=0, type=int),
    )

    resp = Response(PIXEL_BYTES, mimetype="image/gif")
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


@app.route("/visit", methods=["POST", "OPTIONS"])
def visit():
    """
    Visit endpoint for sites that report server-side or via fetch().
    Body example:
      { "referrer": "https://www.google.com/",
        "url": "https://example.com/blog/post",
        "user_id": 0 }
    """
    if request.method == "OPTIONS":
        return ("", 200)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    try:
        user_id = int(data.get("user_id") or 0)
    except (TypeError, ValueError):
        user_id = 0

    visit_id = log_visit(
        get_db(),
        referrer_url=str(data["referrer"]) if data.get("referrer") else None,
        url_destination=str(data.get("url") or ""),
        visitor_ip=client_ip(request),
        user_id=user_id,
    )
    return jsonify({"ok": True, "logged": visit_id is not None, "id": visit_id})


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------
def admin_response(payload):
    """
    JSON for API callers; dashboard forms (next=stats) go back to the dashboard.
    """
    if request.form.get("next") == "stats":
        return redirect(url_for("stats", token=request.args.get("token", "")))
    return jsonify(payload)


@app.route("/admin/sync", methods=["POST"])
def admin_sync():
    require_token()
    db = get_db()
    _, referrers = current_referrers(db)

    result = sync_log(db, referrers)
    if result is None:
        return admin_response({"ok": True, "synced": False})
    return admin_response({"ok": True, "synced": True, **asdict(result)})


@app.route("/admin/delete-log", methods=["POST"])
def admin_delete_log():
    require_token()
    deleted = delete_log(get_db())
    logger.info("Referrer log cleared, %d visits removed", deleted)
    return admin_response({"ok": True, "deleted": deleted})


@app.route("/admin/settings", methods=["GET", "PUT"])
def admin_settings():
    require_token()
    db = get_db()
    options = load_options(db, default_options())

    if request.method == "PUT":
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"ok": False, "error": "expected a JSON object"}), 400
        try:
            if "track_all_referrers" in data:
                options.track_all_referrers = parse_flag(data["track_all_referrers"])
            if "hosts" in data:
                options.hosts = parse_hosts(data["hosts"])
        except InvalidOptions as e:
            return jsonify({"ok": False, "error": str(e)}), 400

        save_options(db, options)
        logger.info(
            "Referrer settings saved: track all %s, %d hosts",
            options.track_all_referrers, len(options.hosts),
        )

    return jsonify({"ok": True, **options.to_dict()})


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------
def build_report(db):
    log = get_log(db)
    parsed = parse_log(log)
    return {
        "total": parsed.total,
        "referrers": top_referrers(parsed),
        "types": most_common(parsed.types),
        "destinations": most_common(parsed.destinations),
        "unknown": top_unknown_referrers(log),
        "countries": tally_countries(log, get_country_from_ip),
        "per_day": visits_per_day(log),
    }


@app.route("/api/report")
def api_report():
    require_token()
    report = build_report(get_db())
    return jsonify({
        "total": report["total"],
        "referrers": [asdict(t) for t in report["referrers"]],
        "types": dict(report["types"]),
        "destinations": dict(report["destinations"]),
        "unknown": dict(report["unknown"]),
        "countries": dict(report["countries"]),
        "per_day": dict(report["per_day"]),
    })


DASHBOARD_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<title>Referrer Analytics</title>
<style>
:root{--bg:#0f172a;--card:#1e293b;--text:#f8fafc;--dim:#94a3b8;--line:#334155;--accent:#38bdf8}
*{box-sizing:border-box;margin:0;padding:0}
body{font-family:system-ui,-apple-system,"Segoe UI",Roboto,sans-serif;background:var(--bg);color:var(--text);padding:2rem;line-height:1.4}
h1{font-size:1.2rem;margin-bottom:1.5rem}
.cards{display:grid;grid-template-columns:repeat(auto-fit,minmax(180px,1fr));gap:1rem;margin-bottom:2rem}
.card{background:var(--card);border-radius:1rem;padding:1rem 1.25rem}
.label{font-size:.7rem;color:var(--dim);margin-bottom:.4rem}
.value{font-size:1.4rem;font-weight:600;word-break:break-word}
.sections{display:grid;gap:1.5rem}
@media(min-width:1100px){.sections{grid-template-columns:repeat(2,minmax(0,1fr))}}
h3{font-size:1rem;margin-bottom:.75rem}
table{width:100%;border-collapse:collapse;font-size:.8rem}
th{text-align:left;font-size:.7rem;text-transform:uppercase;border-bottom:1px solid var(--dim);padding:.4rem .25rem}
td{border-bottom:1px solid var(--line);padding:.4rem .25rem;color:#cbd5e1;word-break:break-word}
td.num{text-align:right;font-variant-numeric:tabular-nums}
.flag{color:#f87171}
.empty{color:var(--dim);font-size:.8rem}
form{display:inline}
button{background:var(--line);color:var(--text);border:0;border-radius:.5rem;padding:.3rem .7rem;cursor:pointer}
</style>
</head>
<body>

<h1>Referrer Analytics</h1>

<section class="cards">
  <div class="card"><div class="label">Visits logged</div><div class="value">{{ total }}</div></div>
  <div class="card"><div class="label">Top referrer</div><div class="value">{{ referrers[0].name if referrers else "-" }}</div></div>
  <div class="card"><div class="label">Top type</div><div class="value">{{ types[0][0] if types else "-" }}</div></div>
  <div class="card">
    {{ spark_svg | safe }}
    <div class="label">Latest day: {{ spark_last }}</div>
  </div>
  <div class="card">
    <form method="post" action="{{ url_for('admin_sync', token=token) }}"><input type="hidden" name="next" value="stats"><button>Sync log</button></form>
    <form method="post" action="{{ url_for('admin_delete_log', token=token) }}"
          onsubmit="return confirm('Delete every logged visit?')"><input type="hidden" name="next" value="stats"><button>Delete log</button></form>
  </div>
</section>

<section class="sections">

  <div class="card">
    <h3>Top 100 Referrers</h3>
    {% if referrers %}
    <table>
      <tr><th>Referrer</th><th>Type</th><th class="num">Visits</th></tr>
      {% for r in referrers %}
      <tr>
        <td>
          {% if r.primary_url %}<a href="{{ r.primary_url }}" rel="noopener">{{ r.name }}</a>{% else %}{{ r.name }}{% endif %}
          {% if r.flagged %}<span class="flag">flagged</span>{% endif %}
        </td>
        <td>{{ r.type }}</td>
        <td class="num">{{ r.count }}</td>
      </tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

  <div class="card">
    <h3>Top 100 Unknown Referrers</h3>
    {% if unknown %}
    <table>
      <tr><th>Host</th><th class="num">Visits</th></tr>
      {% for host, count in unknown %}
      <tr><td>{{ host }}</td><td class="num">{{ "{:,}".format(count) }}</td></tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

  <div class="card">
    <h3>Types</h3>
    {% if types %}
    <table>
      <tr><th>Type</th><th class="num">Visits</th></tr>
      {% for name, count in types %}
      <tr><td>{{ name }}</td><td class="num">{{ count }}</td></tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

  <div class="card">
    <h3>Destinations</h3>
    {% if destinations %}
    <table>
      <tr><th>URL</th><th class="num">Visits</th></tr>
      {% for url, count in destinations %}
      <tr><td>{{ url }}</td><td class="num">{{ count }}</td></tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

  <div class="card">
    <h3>Countries</h3>
    {% if countries %}
    <table>
      <tr><th>Country</th><th class="num">Visits</th></tr>
      {% for code, count in countries %}
      <tr><td>{{ code }}</td><td class="num">{{ count }}</td></tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

  <div class="card">
    <h3>Recent visits</h3>
    {% if recent %}
    <table>
      <tr><th>Date</th><th>Referrer</th><th>Destination</th><th>IP</th></tr>
      {% for v in recent %}
      <tr>
        <td>{{ v.date_recorded }}</td>
        <td>{{ v.referrer_name or v.referrer_host or "N/A" }}</td>
        <td>{{ v.url_destination }}</td>
        <td>{{ v.visitor_ip }}</td>
      </tr>
      {% endfor %}
    </table>
    {% else %}<p class="empty">No data to report yet.</p>{% endif %}
  </div>

</section>

</body>
</html>
"""


@app.route("/stats")
def stats():
    require_token()
    db = get_db()
    report = build_report(db)
    spark = build_sparkline(report["per_day"])

    return render_template_string(
        DASHBOARD_HTML,
        token=request.args.get("token", ""),
        total=report["total"],
        referrers=report["referrers"],
        types=report["types"],
        destinations=report["destinations"],
        unknown=report["unknown"],
        countries=report["countries"],
        recent=get_recent(db, RECENT_LIMIT),
        spark_svg=spark["svg"],
        spark_last=spark["last_count"],
    )


# -----------------------------------------------------------------------------
# health
# -----------------------------------------------------------------------------
@app.route("/healthz")
def healthz():
    return "ok", 200


if __name__ == "__main__":
    # Dev mode, deploy behind gunicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="0.0.0.0", port=8000)
