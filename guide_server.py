#!/usr/bin/env python3
"""
guide_server.py  -  channel guide web site and JSON API

Endpoints
---------
/api/guide.json          current half-hour grid for every channel (?datetime=)
/api/program.json        active program for one channel (?id=&datetime=)
/api/contributors.json   everyone credited in a schedule
/api/pagination/<id>.json  prev/next channel links
/api/visitors            cached live visitor count (JSON, or SSE with Accept: text/event-stream)
/api/visitors.json       straight pass-through of the analytics current_visitors call
/  /ch/<id>  /credits    HTML pages
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import List, Optional

from flask import Flask, Response, abort, jsonify, redirect, render_template_string, request, stream_with_context

from content_store import ChannelCatalog, load_channels
from guide_config import parse_effective_args, resolve_timezone
from guide_core import (
    build_guide,
    find_active_program,
    get_pagination,
    list_contributors,
)
from visitor_store import (
    BlobStore,
    FathomError,
    VisitorService,
    fetch_current_visitors,
    visitor_event_stream,
)

logger = logging.getLogger(__name__)

JSON_CACHE_CONTROL = "public, max-age=15"
NO_STORE_CACHE_CONTROL = "no-cache, no-store, must-revalidate"


class InvalidDatetime(ValueError):
    pass


def parse_request_datetime(raw: Optional[str], tz: tzinfo) -> datetime:
    """Requested moment in the guide's zone; naive values are already guide-local."""
    if not raw:
        return datetime.now(tz)
    try:
        dt = datetime.fromisoformat(raw.strip())
    except ValueError as exc:
        raise InvalidDatetime(raw) from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def _json(payload: object, status: int = 200, cache_control: Optional[str] = None) -> Response:
    resp = jsonify(payload)
    resp.status_code = status
    if cache_control:
        resp.headers["Cache-Control"] = cache_control
    return resp


def _error(message: str, status: int = 500, **extra: object) -> Response:
    return _json({"error": message, **extra}, status)


PAGE_TEMPLATE = r"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ title }}</title>
<style>
  body { font-family: "Courier New", monospace; background: #10104a; color: #f0f0f0; margin: 0; padding: 16px; }
  a { color: #ffe45c; }
  table { border-collapse: collapse; width: 100%; }
  th, td { border: 2px solid #000; padding: 6px 8px; text-align: left; }
  th { background: #2a2a8a; }
  td.cont-before { border-left-style: dashed; }
  td.cont-after { border-right-style: dashed; }
  nav { display: flex; justify-content: space-between; margin-bottom: 12px; }
</style>
</head>
<body>
{% if page == "guide" %}
  <h1>{{ title }}</h1>
  <table>
    <tr><th>CH</th>{% for label in labels %}<th>{{ label }}</th>{% endfor %}</tr>
    {% for row in guide.channels %}
    <tr>
      <td><a href="/ch/{{ row.channel.slug }}">{{ row.channel.slug }} {{ row.channel.name }}</a></td>
      {% for b in row.blocks %}
      <td colspan="{{ b.span }}" class="{{ 'cont-before' if b.continuesBefore }} {{ 'cont-after' if b.continuesAfter }}">{{ b.title }}</td>
      {% endfor %}
    </tr>
    {% endfor %}
  </table>
{% elif page == "channel" %}
  <nav><a href="{{ pagination.prev }}">&larr; prev</a><a href="/">guide</a><a href="{{ pagination.next }}">next &rarr;</a></nav>
  <h1>{{ channel.slug }} {{ channel.name }}</h1>
  {% if active %}
  <p>Now playing: <a href="{{ active.program.url }}">{{ active.program.title }}</a>
     ({{ active.start_time }} - {{ active.end_time }})</p>
  {% if active.program.authors() %}<p>by {{ active.program.authors() | join(", ") }}</p>{% endif %}
  {% else %}
  <p>Nothing on right now.</p>
  {% endif %}
{% else %}
  <h1>{{ title }}</h1>
  <ul>{% for name in contributors %}<li>{{ name }}</li>{% endfor %}</ul>
{% endif %}
</body>
</html>
"""


def create_app(args) -> Flask:
    app = Flask(__name__)

    catalog = load_channels(args.channels_dir)
    tz = resolve_timezone(args.timezone)
    store = BlobStore(args.blob_dir)
    visitors = VisitorService(
        store,
        api_key=args.fathom_api_key,
        site_id=args.fathom_site_id,
        ttl=args.visitors_cache_ttl,
        points=args.visitors_history_points,
    )
    logger.info("Loaded %d channel(s) from %s", len(catalog), args.channels_dir)

    app.config["CATALOG"] = catalog
    app.config["GUIDE_TZ"] = tz
    app.config["VISITORS"] = visitors
    app.config["SSE_INTERVAL"] = args.sse_interval
    app.config["SSE_MAX_EVENTS"] = 0

    def _catalog() -> ChannelCatalog:
        return app.config["CATALOG"]

    def _requested_datetime() -> datetime:
        return parse_request_datetime(request.args.get("datetime"), app.config["GUIDE_TZ"])

    @app.errorhandler(InvalidDatetime)
    def _invalid_datetime(_exc):
        return _error("Invalid datetime", 400)

    for source, target in args.redirects.items():
        app.add_url_rule(
            source,
            endpoint=f"redirect:{source}",
            view_func=lambda target=target: redirect(target, code=301),
        )

    @app.get("/api/guide.json")
    def guide_json():
        return _json(build_guide(_catalog(), _requested_datetime()))

    @app.get("/api/program.json")
    def program_json():
        channel_id = (request.args.get("id") or "").strip()
        if not channel_id:
            return Response(status=400, response="No channel ID provided")
        channel = _catalog().get(channel_id)
        if channel is None:
            return Response(status=404, response="Channel not found")
        active = find_active_program(channel.schedule, _requested_datetime())
        if active is None:
            return _json({})
        return _json(active.to_dict())

    @app.get("/api/contributors.json")
    def contributors_json():
        return _json(list_contributors(_catalog()))

    @app.get("/api/pagination/<channel_id>.json")
    def pagination_json(channel_id: str):
        return _json(get_pagination(_catalog(), channel_id))

    @app.get("/api/visitors")
    def visitors_feed():
        service: VisitorService = app.config["VISITORS"]
        if "text/event-stream" in (request.headers.get("Accept") or ""):
            stream = visitor_event_stream(
                service,
                interval=app.config["SSE_INTERVAL"],
                max_events=app.config["SSE_MAX_EVENTS"],
            )
            return Response(
                stream_with_context(stream),
                mimetype="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )
        try:
            return _json(service.current(), cache_control=JSON_CACHE_CONTROL)
        except Exception:
            logger.exception("Internal server error")
            return _error("Internal server error")

    @app.get("/api/visitors.json")
    def visitors_passthrough():
        service: VisitorService = app.config["VISITORS"]
        if not service.api_key:
            return _error("Fathom API key is not configured")
        try:
            data = fetch_current_visitors(service.api_key, service.site_id)
        except FathomError as exc:
            if exc.status is None:
                logger.error("Error fetching current visitors: %s", exc)
                return _error("Internal server error")
            return _error("Failed to fetch data from Fathom API", exc.status, details=exc.details)
        return _json(data, cache_control=NO_STORE_CACHE_CONTROL)

    @app.get("/")
    def guide_page():
        now = datetime.now(app.config["GUIDE_TZ"])
        guide = build_guide(_catalog(), now)
        labels: List[str] = []
        for iso in guide["timeBlocks"]:
            block = datetime.fromisoformat(iso).astimezone(app.config["GUIDE_TZ"])
            labels.append(block.strftime("%H:%M"))
        return render_template_string(PAGE_TEMPLATE, page="guide", title="Channel Guide", guide=guide, labels=labels)

    @app.get("/ch/<channel_id>")
    def channel_page(channel_id: str):
        channel = _catalog().get(channel_id)
        if channel is None:
            abort(404)
        active = find_active_program(channel.schedule, datetime.now(app.config["GUIDE_TZ"]))
        return render_template_string(
            PAGE_TEMPLATE,
            page="channel",
            title=f"{channel.slug} {channel.name}",
            channel=channel,
            active=active,
            pagination=get_pagination(_catalog(), channel.id),
        )

    @app.get("/credits")
    def credits_page():
        return render_template_string(
            PAGE_TEMPLATE,
            page="credits",
            title="Credits",
            contributors=list_contributors(_catalog()),
        )

    return app


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_effective_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(args)
    logger.info("Serving channel guide on http://%s:%s", args.host, args.port)
    app.run(host=args.host, port=args.port, threaded=True)


if __name__ == "__main__":
    main()
