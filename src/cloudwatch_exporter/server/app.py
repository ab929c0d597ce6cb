"""CloudWatch exporter – HTTP transport.

FastAPI application exposing scrapes, configuration reloads and the
exporter's own metrics.

Run with:
    cwe serve --config config.yml
"""

from __future__ import annotations

from typing import Optional
import logging

from fastapi import FastAPI, Header, Query
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from cloudwatch_exporter import __version__
from cloudwatch_exporter.monitoring.exporter import ScrapeHandler

logger = logging.getLogger(__name__)

# Left to render and send the response once the engine stops
SCRAPE_TIMEOUT_MARGIN_SECONDS = 0.5


def scrape_timeout(header: Optional[str], margin: float = SCRAPE_TIMEOUT_MARGIN_SECONDS) -> Optional[float]:
    """Engine timeout derived from Prometheus' X-Prometheus-Scrape-Timeout-Seconds header."""
    if not header:
        return None
    try:
        timeout = float(header)
    except ValueError:
        logger.debug(f"Ignoring malformed scrape timeout header: {header!r}")
        return None
    if not timeout > 0:
        return None
    # Very short timeouts keep half instead of going negative
    return timeout - margin if timeout > 2 * margin else timeout / 2


def create_app(handler: ScrapeHandler,
               scrape_path: str = "/scrape",
               metrics_path: str = "/metrics") -> FastAPI:
    """Build the FastAPI app around a ScrapeHandler."""

    app = FastAPI(
        title="CloudWatch Exporter",
        description="Scrape-time bridge from CloudWatch to the Prometheus exposition format",
        version=__version__,
    )
    app.state.handler = handler

    @app.get(scrape_path)
    def scrape(
        target: Optional[str] = Query(None),
        task: Optional[str] = Query(None),
        region: Optional[str] = Query(None),
        roleArn: Optional[str] = Query(None),
        x_prometheus_scrape_timeout_seconds: Optional[str] = Header(None),
    ) -> Response:
        if not task:
            return PlainTextResponse("Error: Missing task parameter\n", status_code=400)

        # The engine is synchronous; FastAPI runs sync endpoints in its threadpool
        result = handler.handle(target, task, region, roleArn,
                                timeout_seconds=scrape_timeout(x_prometheus_scrape_timeout_seconds))
        return Response(content=result.body, status_code=result.status, media_type=result.content_type)

    @app.api_route("/reload", methods=["GET", "POST"])
    def reload() -> PlainTextResponse:
        ok, message = handler.reload()
        return PlainTextResponse(message + "\n", status_code=200 if ok else 500)

    @app.get(metrics_path)
    def metrics() -> Response:
        return Response(content=handler.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    def healthz() -> dict:
        store = handler.store
        return {
            "status": "ok" if store.loaded else "no_config",
            "tasks": store.current_snapshot().task_names() if store.loaded else [],
            "reloads": store.reload_count,
            "last_error": store.last_error,
        }

    return app
