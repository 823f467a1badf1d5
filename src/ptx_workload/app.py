import asyncio
import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, PositiveInt

from ptx_workload import errors
from ptx_workload.config import load_config, rpc_url
from ptx_workload.ledger import probe
from ptx_workload.logging_config import setup_logging
from ptx_workload.models import TransferRecord
from ptx_workload.scenarios import Harness, HarnessContext

log = logging.getLogger("ptx_workload.app")


class FundingReq(BaseModel):
    target_count: PositiveInt | None = None
    seed: str | None = None
    total_fund: PositiveInt | None = None
    serial: bool = False


class FundingResp(BaseModel):
    accounts: list[str]
    rounds: int
    total_fund: Decimal
    tx_hashes: list[str]


class ThroughputReq(BaseModel):
    batch_size: PositiveInt
    concurrency: PositiveInt | None = None
    batches: PositiveInt = 1
    amount: int | None = Field(default=None, ge=0)
    pattern: str | None = None


class ThroughputResp(BaseModel):
    count: int
    elapsed: float
    tps: float
    submitted: int
    included: int
    cancelled: bool
    failures: list[dict]
    error: str | None = None


class TransferEdge(BaseModel):
    sender: str
    recipient: str
    amount: int = Field(ge=0)


class ConsistencyReq(BaseModel):
    transfers: list[TransferEdge] | None = None
    concurrency: PositiveInt | None = None
    amount: PositiveInt | None = None


class MismatchResp(BaseModel):
    address: str
    expected: Decimal
    observed: Decimal | None


class ConsistencyResp(BaseModel):
    ok: bool
    accounts: int
    mismatches: list[MismatchResp]
    failures: list[dict] = []


def http_error(e: Exception) -> HTTPException:
    match e:
        case errors.NotFoundError():
            return HTTPException(status_code=404, detail=str(e))
        case errors.CorruptError() | errors.EncodingError() | ValueError():
            return HTTPException(status_code=422, detail=str(e))
        case errors.FundingError():
            return HTTPException(status_code=502, detail={"error": str(e), "round": e.round, "tx_hash": e.tx_hash})
        case _:
            return HTTPException(status_code=500, detail=str(e))


def create_app(config: dict | None = None, *, harness: Harness | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "harness", None) is None:
            cfg = config or load_config()
            simulated = os.getenv("PTX_SIMULATED", "").lower() in ("1", "true", "yes")
            if not simulated:
                t = cfg["timeout"]
                async with asyncio.timeout(t["startup"]):
                    log.info("Probing RPC endpoint...")
                    await probe(rpc_url(cfg), t["probe_retries"], t["probe_delay"])
            ctx = HarnessContext.from_config(cfg, simulated=simulated)
            app.state.harness = Harness(ctx)
            log.info("Harness ready against %s", type(ctx.ledger).__name__)
        try:
            yield
        finally:
            log.info("Shutting down...")
            app.state.harness.ctx.stop.set()

    app = FastAPI(
        title="PTX Workload",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Scenarios", "description": "Run funding, throughput and consistency scenarios"},
            {"name": "State", "description": "Harness state"},
        ],
    )
    app.state.harness = harness

    r_scenario = APIRouter(prefix="/scenario", tags=["Scenarios"])
    r_state = APIRouter(prefix="/state", tags=["State"])

    def _harness(request: Request) -> Harness:
        return request.app.state.harness

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_scenario.post("/funding", response_model=FundingResp)
    async def scenario_funding(req: FundingReq, request: Request):
        h = _harness(request)
        try:
            res = await h.run_funding_scenario(req.seed, req.target_count, total_fund=req.total_fund, serial=req.serial)
        except (errors.WorkloadError, ValueError) as e:
            raise http_error(e) from e
        return FundingResp(
            accounts=[a.address for a in res.accounts],
            rounds=res.rounds,
            total_fund=res.total_fund,
            tx_hashes=res.tx_hashes,
        )

    @r_scenario.post("/throughput", response_model=ThroughputResp)
    async def scenario_throughput(req: ThroughputReq, request: Request):
        h = _harness(request)
        try:
            res = await h.run_throughput_scenario(
                req.batch_size, req.concurrency, batches=req.batches, amount=req.amount, pattern=req.pattern
            )
        except (errors.WorkloadError, ValueError) as e:
            raise http_error(e) from e
        return ThroughputResp(
            count=res.count,
            elapsed=res.elapsed,
            tps=res.tps,
            submitted=res.submitted,
            included=res.included,
            cancelled=res.cancelled,
            failures=res.failures,
            error=res.error,
        )

    @r_scenario.post("/consistency", response_model=ConsistencyResp)
    async def scenario_consistency(req: ConsistencyReq, request: Request):
        h = _harness(request)
        graph = None
        if req.transfers is not None:
            graph = [TransferRecord(e.sender, e.recipient, Decimal(e.amount)) for e in req.transfers]
        try:
            report = await h.run_consistency_scenario(graph, req.concurrency, amount=req.amount)
        except (errors.WorkloadError, ValueError) as e:
            raise http_error(e) from e
        return ConsistencyResp(
            ok=report.ok,
            accounts=len(report.expected),
            mismatches=[MismatchResp(address=m.address, expected=m.expected, observed=m.observed)
                        for m in report.mismatches],
            failures=list(report.failures),
        )

    @r_state.get("/summary")
    async def state_summary(request: Request):
        return _harness(request).summary()

    app.include_router(r_scenario)
    app.include_router(r_state)
    return app


def build_app() -> FastAPI:
    """uvicorn factory for `ptx-workload serve`."""
    setup_logging()
    return create_app()
