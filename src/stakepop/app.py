import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, NonNegativeInt, PositiveInt

from stakepop.constants import DEFAULT_PARACHAIN_ID, TERMINAL_STATES
from stakepop.errors import ChainConnectionError, PopulateError, StageError
from stakepop.orchestrator import Orchestrator
from stakepop.tracking import InMemoryStore

log = logging.getLogger("stakepop.app")


class ValidateReq(BaseModel):
    number: NonNegativeInt | None = None
    bond_amount: PositiveInt | None = None
    parachain_id: int = DEFAULT_PARACHAIN_ID
    namespace: str | None = None


class NominateReq(ValidateReq):
    nominations: NonNegativeInt | None = None


def create_app(cfg: dict[str, Any], connect) -> FastAPI:
    """Build the service around one chain connection opened at startup.

    ``connect`` is an async callable taking the config and returning a ChainClient.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Connecting to %s", cfg["chain"]["url"])
        app.state.client = await connect(cfg)
        app.state.store = InMemoryStore()
        # One population run at a time on the shared connection
        app.state.run_lock = asyncio.Lock()
        log.info("Ready to accept requests!")
        try:
            yield
        finally:
            log.info("Shutting down...")
            await app.state.client.close()

    app = FastAPI(
        title="stakepop",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Staking", "description": "Populate validators and nominators"},
            {"name": "State", "description": "Tracked transactions"},
        ],
    )
    r_staking = APIRouter(tags=["Staking"])
    r_state = APIRouter(prefix="/state", tags=["State"])

    def orchestrator(request: Request) -> Orchestrator:
        return Orchestrator(request.app.state.client, cfg, store=request.app.state.store)

    @app.exception_handler(PopulateError)
    async def populate_error(request: Request, exc: PopulateError):
        body = {"stage": exc.stage, "account": exc.account, "detail": exc.message}
        if isinstance(exc, StageError):
            body["failures"] = [o.to_dict() for o in exc.failures]
        status = 503 if isinstance(exc, ChainConnectionError) else 502
        log.error("Request failed: %s", exc)
        return JSONResponse(status_code=status, content=body)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_staking.post("/validate")
    async def validate(req: ValidateReq, request: Request):
        number = req.number if req.number is not None else int(cfg["accounts"]["number"])
        async with request.app.state.run_lock:
            report = await orchestrator(request).validate(
                number, req.bond_amount, namespace=req.namespace, parachain_id=req.parachain_id
            )
        return report.to_dict()

    @r_staking.post("/nominate")
    async def nominate(req: NominateReq, request: Request):
        number = req.number if req.number is not None else int(cfg["accounts"]["number"])
        nominations = req.nominations if req.nominations is not None else int(cfg["staking"]["nominations"])
        async with request.app.state.run_lock:
            report = await orchestrator(request).nominate(
                number, req.bond_amount, nominations, namespace=req.namespace, parachain_id=req.parachain_id
            )
        return report.to_dict()

    @r_staking.get("/stakers")
    async def stakers(request: Request):
        report = await orchestrator(request).stakers_info()
        return report.to_dict()

    @r_state.get("/pending")
    async def state_pending(request: Request):
        return [p.to_dict() for p in await request.app.state.store.all() if p.state not in TERMINAL_STATES]

    @r_state.get("/failed")
    async def state_failed(request: Request):
        return [p.to_dict() for p in await request.app.state.store.all()
                if p.state in TERMINAL_STATES and p.error]

    @r_state.get("/stats")
    def state_stats(request: Request):
        return request.app.state.store.snapshot_stats()

    app.include_router(r_staking)
    app.include_router(r_state)
    return app


def serve(cfg: dict[str, Any], connect) -> None:
    svc = cfg["service"]
    uvicorn.run(create_app(cfg, connect), host=svc["host"], port=int(svc["port"]), lifespan="on")
