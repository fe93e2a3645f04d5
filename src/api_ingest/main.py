import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from api_ingest.controllers.upload_controller import router as upload_controller
from api_ingest.controllers.job_controller import router as job_controller
from api_ingest.config.base_config import settings
from api_ingest.database import init_db
from api_ingest.dependencies import ServiceContainer, build_container
from api_ingest.exceptions.handlers import EXCEPTION_HANDLERS
from common.job_queue import LocalJobQueue
from contextlib import asynccontextmanager


logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup code
        init_db(container.engine)
        await container.queue.start()
        run_worker = container.settings.RUN_EMBEDDED_WORKER
        if run_worker:
            if isinstance(container.queue, LocalJobQueue):
                # the in-memory queue starts empty after a restart
                await container.processing_service.recover_unfinished()
            container.worker_pool.start()
        container.sweeper.start()
        yield
        # Shutdown code
        await container.sweeper.stop()
        if run_worker:
            await container.worker_pool.stop()
        await container.queue.stop()

    app = FastAPI(title="Video Ingest", lifespan=lifespan)
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # adjust to your frontend URL in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    for exc_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exc_class, handler)

    app.include_router(upload_controller, prefix="/api")
    app.include_router(job_controller, prefix="/api")
    return app


def main():
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
