import asyncio
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from fulfillment.application.container import ApplicationContainer
from fulfillment.presentation import api
from fulfillment.presentation.api import register_error_handlers, router
from fulfillment.presentation.container import PresentationContainer

CONFIG_PATH = Path(__file__).resolve().parent.parent / "fulfillment" / "config.yaml"


def build_api(container: ApplicationContainer):
    app = FastAPI(title="fulfillment")
    app.include_router(router)
    register_error_handlers(app)
    container.wire(modules=[api])
    app.container = container
    return app


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    presentation_container = PresentationContainer()
    presentation_container.config.from_yaml(str(CONFIG_PATH), required=True)

    app = build_api(presentation_container.application)
    kafka_producer = presentation_container.application.infrastructure_container.kafka_producer()

    api_task = asyncio.create_task(
        uvicorn.Server(
            uvicorn.Config(app, host="0.0.0.0", port=8000, log_level="info")
        ).serve()
    )
    outbox_task = asyncio.create_task(presentation_container.outbox_worker().run())
    reminder_task = asyncio.create_task(presentation_container.reminder_worker().run())
    cleanup_task = asyncio.create_task(presentation_container.outbox_cleanup_worker().run())

    try:
        await asyncio.gather(api_task, outbox_task, reminder_task, cleanup_task)
    finally:
        await kafka_producer.stop()


if __name__ == "__main__":
    asyncio.run(main())
