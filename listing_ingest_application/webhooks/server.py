from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from ..config import settings
from ..services.database import get_database
from . import routes


def create_app() -> FastAPI:
    app = FastAPI(
        title="Listing ingest webhooks",
        description="Receives Bright Data snapshot notifications and data deliveries",
    )
    app.include_router(routes.router)
    return app


app = create_app()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    get_database().initialize()
    if not settings.webhooks_enabled:
        logging.getLogger("temporal.worker.webhooks").warning(
            "BRIGHTDATA_WEBHOOKS_ENABLED is off; runs will poll and callbacks will be unsolicited"
        )
    uvicorn.run(app, host=settings.webhook_host, port=settings.webhook_port)


if __name__ == "__main__":
    main()
