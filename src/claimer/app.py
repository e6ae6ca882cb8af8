import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request

from claimer import __version__
from claimer.scheduler import DispatchScheduler

log = logging.getLogger("claimer.app")

r_dispatch = APIRouter(tags=["Dispatch"])


def _scheduler(request: Request) -> DispatchScheduler:
    return request.app.state.scheduler


@r_dispatch.get("/health")
def health():
    return {"status": "ok", "version": __version__}


@r_dispatch.get("/status")
async def dispatch_status(request: Request):
    """Scheduler state, sequence cache, counters and the last outcome."""
    return _scheduler(request).status()


@r_dispatch.post("/stop")
async def stop_dispatch(request: Request):
    s = _scheduler(request)
    if s.stop_event.is_set():
        raise HTTPException(status_code=409, detail="Dispatcher already stopped")
    log.info("Stop requested over control API")
    s.stop()
    return {"status": "stopping", "state": str(s.state), "stats": s.stats.as_dict()}


def create_app(scheduler: DispatchScheduler) -> FastAPI:
    app = FastAPI(title="claimer", version=__version__)
    app.state.scheduler = scheduler
    app.include_router(r_dispatch)
    return app
