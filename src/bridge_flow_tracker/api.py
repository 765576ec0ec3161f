"""HTTP API for the flow dashboard.

Routes (all under /api/flow):

- GET  /time-series?period=24h|7d|30d|1y
- GET  /stats?period=24h|7d|30d|1y
- GET  /transactions?page=&limit=
- GET  /transactions/{address}?type=&limit=&offset=
- POST /sync
- GET  /health

Responses are `{"success": true, ...}` on success, `{"success": false,
"error": ...}` with 400 for invalid parameters and 500 for anything else.
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any, Literal, TypeVar

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from bridge_flow_tracker.errors import ValidationError
from bridge_flow_tracker.ingestor.sync import SyncStatus
from bridge_flow_tracker.storage.repos import FlowType
from bridge_flow_tracker.storage.store import TransactionStore
from bridge_flow_tracker.timeseries.query import Clock, TimeSeriesQueryEngine

if TYPE_CHECKING:
    from bridge_flow_tracker.ingestor.sync import ChainSyncCoordinator
    from bridge_flow_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

API_PREFIX = "/api/flow"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

Period = Literal["24h", "7d", "30d", "1y"]

M = TypeVar("M", bound=BaseModel)


class PeriodQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: Period = "24h"


class TransactionsQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=20)


class AddressTransactionsQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: FlowType | None = None
    limit: int = Field(default=100, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


def _parse_query(model: type[M], request: web.Request) -> M:
    try:
        return model.model_validate(dict(request.query))
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(details) from e


def json_response(data: dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response({"success": status < 400, **data}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map failures to JSON error bodies."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return json_response({"error": str(e)}, status=400)
    except Exception as e:
        logger.exception("Request %s %s failed", request.method, request.path)
        return json_response({"error": str(e)}, status=500)


class FlowApi:
    """Request handlers; each request gets its own database session."""

    def __init__(
        self,
        db: DatabaseManager,
        coordinator: ChainSyncCoordinator,
        *,
        clock: Clock = time.time,
    ) -> None:
        self._db = db
        self._coordinator = coordinator
        self._clock = clock

    async def time_series(self, request: web.Request) -> web.Response:
        params = _parse_query(PeriodQuery, request)
        async with self._db.get_async_session() as session:
            points = await TimeSeriesQueryEngine(session, clock=self._clock).query(params.period)
        return json_response({"data": [p.to_dict() for p in points]})

    async def stats(self, request: web.Request) -> web.Response:
        params = _parse_query(PeriodQuery, request)
        async with self._db.get_async_session() as session:
            stats = await TimeSeriesQueryEngine(session, clock=self._clock).stats(params.period)
        return json_response({"data": stats.to_dict()})

    async def list_transactions(self, request: web.Request) -> web.Response:
        params = _parse_query(TransactionsQuery, request)
        async with self._db.get_async_session() as session:
            page = await TransactionStore(session).list_page(params.page, params.limit)
        return json_response(page.to_dict())

    async def address_transactions(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        if not _ADDRESS_RE.match(address):
            raise ValidationError(f"Invalid address: {address}")
        params = _parse_query(AddressTransactionsQuery, request)
        async with self._db.get_async_session() as session:
            items = await TransactionStore(session).get(
                address, type=params.type, limit=params.limit, offset=params.offset
            )
        return json_response(
            {
                "data": [tx.to_dict() for tx in items],
                "pagination": {"limit": params.limit, "offset": params.offset, "hasMore": len(items) == params.limit},
            }
        )

    async def sync(self, request: web.Request) -> web.Response:
        result = await self._coordinator.run_once()
        if result.status == SyncStatus.FAILED:
            return json_response({"error": result.error or "Sync failed", "data": result.to_dict()}, status=500)
        if result.status == SyncStatus.SKIPPED:
            message = "Sync already in progress"
        elif result.status == SyncStatus.UP_TO_DATE:
            message = "Already up to date"
        else:
            message = "Sync completed successfully"
        return json_response({"message": message, "data": result.to_dict()})

    async def health(self, request: web.Request) -> web.Response:
        checkpoint = await self._coordinator.get_checkpoint()
        return json_response(
            {
                "data": {
                    "state": self._coordinator.state.value,
                    "running": self._coordinator.is_running,
                    "lastSyncedBlock": checkpoint,
                    "stats": self._coordinator.stats.to_dict(),
                }
            }
        )


def create_app(
    db: DatabaseManager,
    coordinator: ChainSyncCoordinator,
    *,
    clock: Clock = time.time,
) -> web.Application:
    """Create the aiohttp application with all flow routes registered."""
    api = FlowApi(db, coordinator, clock=clock)
    app = web.Application(middlewares=[error_middleware])
    app.router.add_get(f"{API_PREFIX}/time-series", api.time_series)
    app.router.add_get(f"{API_PREFIX}/stats", api.stats)
    app.router.add_get(f"{API_PREFIX}/transactions", api.list_transactions)
    app.router.add_get(f"{API_PREFIX}/transactions/{{address}}", api.address_transactions)
    app.router.add_post(f"{API_PREFIX}/sync", api.sync)
    app.router.add_get(f"{API_PREFIX}/health", api.health)
    return app
