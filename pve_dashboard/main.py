import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from pve_dashboard.api import dashboard_error_handler, request_validation_handler, router
from pve_dashboard.config import get_settings
from pve_dashboard.db import configure_sqlite_runtime, create_schema
from pve_dashboard.errors import DashboardError
from pve_dashboard.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="PVE Dashboard")
app.include_router(router)
app.add_exception_handler(DashboardError, dashboard_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


@app.on_event("startup")
async def startup() -> None:
    configure_logging()
    settings = get_settings()
    await configure_sqlite_runtime()
    await create_schema()
    if settings.proxmox_host:
        logger.info("legacy host enabled host_id=%s", settings.legacy_host_id)
    logger.info("pve-dashboard startup complete")
