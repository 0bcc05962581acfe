from fastapi import Depends, FastAPI, Request
from .routers import resources, metrics
from .config import get_settings
from .services.controller import Controller, get_controller
import logging

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Converge Reconciliation Controller")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.debug(f"Incoming request: {request.method} {request.url.path}")
    try:
        response = await call_next(request)
        logger.debug(f"Response status: {response.status_code}")
        return response
    except Exception as e:
        logger.error(f"Request failed: {str(e)}")
        raise


@app.on_event("startup")
async def startup():
    controller = get_controller()
    await controller.start()
    logger.info(f"Controller started ({settings.backend} backend, {settings.worker_count} workers)")


@app.on_event("shutdown")
async def shutdown():
    controller = get_controller()
    await controller.stop()


app.include_router(resources.router)
app.include_router(metrics.router)


@app.get("/health")
async def health_check(controller: Controller = Depends(get_controller)):
    return {
        "status": "healthy" if controller.scheduler.running else "starting",
        "backend": settings.backend,
        "managed_resources": len(controller.store),
    }
