import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request

from txload.report import collection_lines
from txload.runner import LoadTest

log = logging.getLogger("txload.app")

r_state = APIRouter(prefix="/state", tags=["State"])
r_workload = APIRouter(prefix="/workload", tags=["Workload"])


def _load_test(request: Request) -> LoadTest:
    return request.app.state.load_test


def _record_exit(app: FastAPI, task: asyncio.Task) -> None:
    if task.cancelled() or task.exception() is not None:
        app.state.exit_code = 1
    else:
        app.state.exit_code = task.result()


def create_app(load_test: LoadTest) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.load_test = load_test
        app.state.exit_code = None
        # uvicorn owns SIGINT/SIGTERM here; shutdown goes through the lifespan
        task = asyncio.create_task(load_test.run(install_signal_handlers=False), name="load_test")
        task.add_done_callback(lambda t: _record_exit(app, t))
        app.state.task = task
        try:
            yield
        finally:
            log.info("Shutting down, stopping load test and collecting funds...")
            load_test.stop()
            await task
            log.info("Shutdown complete (exit code %s)", app.state.exit_code)

    app = FastAPI(
        title="txload",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "State", "description": "Run progress and accounts"},
            {"name": "Workload", "description": "Control the running load test"},
        ],
    )
    app.include_router(r_state)
    app.include_router(r_workload)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


@r_state.get("/stats")
def state_stats(request: Request):
    lt = _load_test(request)
    return {**lt.snapshot(), "exit_code": request.app.state.exit_code}


@r_state.get("/accounts")
def state_accounts(request: Request):
    return _load_test(request).accounts()


@r_state.get("/collection")
def state_collection(request: Request):
    lt = _load_test(request)
    summary = lt.collection
    if summary is None:
        return None
    return {
        "successful": summary.successful,
        "total": summary.total,
        "collected": summary.collected,
        "final_balance": summary.final_balance,
        "lines": collection_lines(summary, lt.ledger.format_amount),
    }


@r_workload.post("/stop")
def workload_stop(request: Request):
    lt = _load_test(request)
    lt.stop()
    return lt.snapshot()
