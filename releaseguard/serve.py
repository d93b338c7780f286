"""FastAPI app: public health surface and rollback trigger surface."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from releaseguard.config import get_settings
from releaseguard.deploy.rollback import RollbackMode, RollbackRequest, RollbackResult
from releaseguard.deploy.worker import RollbackWorker
from releaseguard.exceptions import InvalidAppName, InvalidReleaseName, ProcessRunnerError
from releaseguard.resilience.probes import ProbeStatus
from releaseguard.services import Services

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class RollbackBody(BaseModel):
    app_id: str
    target_release: str | None = None
    reason: str = "Manual rollback initiated"
    initiated_by: str = "api"


def _services(request: Request) -> Services:
    services = request.app.state.services
    if services is None:
        services = Services(get_settings())
        request.app.state.services = services
    return services


def _worker(request: Request) -> RollbackWorker:
    worker = request.app.state.worker
    if worker is None:
        worker = RollbackWorker(_services(request).orchestrator)
        request.app.state.worker = worker
    return worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Stop the rollback worker and close clients on shutdown.

    When TESTING=1, skip connecting anything at startup.
    """
    if os.environ.get("TESTING") != "1" and app.state.services is None:
        app.state.services = Services(get_settings())
        logger.info("releaseguard services initialized")
    yield
    if app.state.worker is not None:
        app.state.worker.stop(wait=False)
    if app.state.services is not None:
        app.state.services.close()
    logger.info("releaseguard shut down")


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title="releaseguard",
        description="Deployment health verification and automatic rollback",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.worker = None

    @app.get("/health")
    def health_check(request: Request):
        """Aggregated deployment health; 503 when unhealthy."""
        services = _services(request)
        report = services.health()
        doc = report.to_document()
        doc["deployment_environment"] = services.settings.environment
        doc["version"] = services.settings.version
        return JSONResponse(doc, status_code=report.http_status)

    @app.get("/health/{probe_name}")
    def probe_detail(probe_name: str, request: Request):
        """Run one probe of the deployment set."""
        services = _services(request)
        probes = {p.name: p for p in services.deployment_probes()}
        probe = probes.get(probe_name)
        if probe is None:
            return JSONResponse(
                {"error": f"Unknown probe {probe_name!r}", "available": sorted(probes)},
                status_code=404,
            )
        (result,) = services.aggregator.run_probes([probe])
        status_code = 503 if result.status is ProbeStatus.UNHEALTHY else 200
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.get("/circuit-breakers")
    def circuit_breakers(request: Request):
        """Current state of every circuit breaker."""
        return JSONResponse(_services(request).breakers.get_all_states())

    @app.get("/releases/{app_id}")
    def releases(app_id: str, request: Request):
        services = _services(request)
        try:
            services.validate_app_id(app_id)
            listed = services.orchestrator.list_releases(app_id)
        except InvalidAppName as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except ProcessRunnerError as exc:
            logger.error("Listing releases for %s failed: %s", app_id, exc)
            return JSONResponse({"error": str(exc)}, status_code=502)
        return JSONResponse({
            "app_id": app_id,
            "releases": [r.identifier for r in listed],
            "previous": listed[1].identifier if len(listed) > 1 else None,
        })

    @app.post("/rollback")
    async def rollback(body: RollbackBody, request: Request):
        """Manual rollback; runs on the rollback worker."""
        services = _services(request)
        rb_request = RollbackRequest(
            app_id=body.app_id,
            reason=body.reason,
            target_release=body.target_release,
            mode=RollbackMode.MANUAL,
            initiated_by=body.initiated_by,
        )
        try:
            services.validate_app_id(body.app_id)
            services.validate_release(body.target_release)
        except (InvalidAppName, InvalidReleaseName) as exc:
            result = RollbackResult.failed(rb_request, exc)
            return JSONResponse(result.to_dict(), status_code=400)

        future = _worker(request).submit(rb_request)
        try:
            result = await asyncio.wrap_future(future)
        except ProcessRunnerError as exc:
            logger.error("Rollback of %s aborted by process runner: %s", body.app_id, exc)
            result = RollbackResult.runner_fault(rb_request, exc)
        return JSONResponse(result.to_dict(), status_code=result.http_status)

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "releaseguard.serve:app",
        host=os.environ.get("RELEASEGUARD_BIND", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8050")),
    )


if __name__ == "__main__":
    main()
