"""HTTP entrypoint: crawl triggers, provider webhooks, job lookups and progress streams."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request, stream_with_context

from boothworker.core.config import get_settings
from boothworker.core.errors import ConfigError, ExternalServiceError, JobLimitExceeded, SourceUnavailable, UnknownJob
from boothworker.core.services import Services, build_services
from boothworker.jobs.orchestrator import progress_event

logger = logging.getLogger(__name__)


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


def create_app(services: Optional[Services] = None) -> Flask:
    services = services or build_services(get_settings())
    app = Flask(__name__)
    app.config["SERVICES"] = services

    # ---------- Health ----------

    @app.get("/")
    def root() -> Any:
        return "ok", 200

    @app.get("/healthz")
    def healthcheck() -> Any:
        """Reads settings only; does not touch the database."""
        return (
            jsonify(
                {
                    "status": "ok",
                    "worker_port_config": services.settings.worker_port,
                    "storage": "postgres" if services.database is not None else "memory",
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    # ---------- Crawls ----------

    @app.post("/crawl")
    def start_crawl() -> Any:
        """
        Start crawls asynchronously.
        JSON fields: source_name (optional, all due sources when omitted), source_url,
        extractor_type, async (must be true when given), force_crawl (bool), max_pages (int)
        """
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        if payload.get("async") is False:
            return _error("only asynchronous crawls are supported", 400)

        try:
            jobs = services.orchestrator.start_crawl(payload)
        except ValueError as exc:
            return _error(str(exc), 400)
        except SourceUnavailable as exc:
            return _error(str(exc), 404)
        except JobLimitExceeded as exc:
            return _error(str(exc), 429)
        except ConfigError as exc:
            return _error(str(exc), 503)
        except ExternalServiceError as exc:
            return _error(str(exc), 502)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Starting crawl failed: %s", exc)
            return _error("crawl start failed", 500)

        return jsonify({"jobs": jobs}), 202

    @app.post("/webhooks/crawl")
    def crawl_webhook() -> Any:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error("invalid JSON body", 400)
        event_type = payload.get("type")
        job_id = payload.get("id") or payload.get("jobId")
        if not event_type or not job_id:
            return _error("type and id are required", 400)

        logger.info("Webhook received: type=%s job=%s", event_type, job_id)
        try:
            result = services.webhook.handle_event(str(event_type), str(job_id), payload)
        except UnknownJob:
            return _error("Job not found", 404)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Webhook %s for %s failed: %s", event_type, job_id, exc)
            return _error(str(exc), 500)
        return jsonify(result.to_response()), 200

    # ---------- Jobs ----------

    @app.get("/jobs/stale")
    def stale_jobs() -> Any:
        stale = services.orchestrator.stale_jobs()
        return jsonify({"jobs": [job.to_dict() for job in stale], "window_minutes": services.settings.staleness_minutes})

    @app.get("/jobs/<job_id>")
    def get_job(job_id: str) -> Any:
        job = services.jobs.get_job(job_id)
        if job is None:
            return _error("Job not found", 404)
        return jsonify({"data": job.to_dict()})

    @app.get("/crawl/progress")
    def crawl_progress() -> Any:
        """Server-sent events mirroring one job's state until it is terminal."""
        job_id = request.args.get("job_id")
        if not job_id:
            return _error("job_id is required", 400)
        if services.jobs.get_job(job_id) is None:
            return _error("Job not found", 404)
        poll_seconds = services.settings.progress_poll_seconds

        def events():
            last = None
            while True:
                job = services.jobs.get_job(job_id)
                if job is None:
                    return
                event = progress_event(job)
                if event != last:
                    yield f"data: {json.dumps(event)}\n\n"
                    last = event
                if job.status.is_terminal:
                    return
                time.sleep(poll_seconds)

        return Response(
            stream_with_context(events()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ---------- Dedup & quality ----------

    @app.post("/dedup")
    def run_dedup() -> Any:
        """
        Queue a deduplication pass.
        Optional JSON: city (str), radius_m (float), final (bool)
        """
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        city = payload.get("city") or None
        radius_raw = payload.get("radius_m")
        radius_m = None
        if radius_raw is not None:
            try:
                radius_m = float(radius_raw)
            except (TypeError, ValueError):
                return _error("radius_m must be numeric", 400)
            if radius_m <= 0:
                return _error("radius_m must be positive", 400)
        final = bool(payload.get("final", False))

        logger.info("Queueing dedup pass: city=%s radius=%s final=%s", city, radius_m, final)
        services.executor.submit(_run_dedup_safe, services, city, radius_m, final)
        return jsonify({"data": {"status": "queued"}}), 202

    @app.get("/quality/needs-enrichment")
    def needs_enrichment() -> Any:
        city = request.args.get("city") or None
        limit_raw = request.args.get("limit")
        limit = None
        if limit_raw is not None:
            try:
                limit = int(limit_raw)
            except ValueError:
                return _error("limit must be numeric", 400)
            if limit <= 0:
                return _error("limit must be positive", 400)
        entities = services.entities.list_entities(city=city)
        flagged = services.quality.needs_enrichment(entities)
        return jsonify(
            {
                "data": flagged[:limit] if limit else flagged,
                "statistics": services.quality.statistics(entities),
                "threshold": services.quality.threshold,
            }
        )

    return app


# ---------- Internals ----------


def _run_dedup_safe(services: Services, city: Optional[str], radius_m: Optional[float], final: bool) -> None:
    try:
        services.engine.run(city=city, radius_m=radius_m, final=final)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Dedup pass failed: %s", exc)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    settings = get_settings()
    port = int(os.getenv("PORT") or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    create_app(build_services(settings)).run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
