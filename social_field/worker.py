"""
Background location worker.

Requests are tagged with a correlation id and answered with a response
carrying the same id. Work runs in an executor so the frame loop is never
blocked; a failing request turns into an ``ERROR`` response and never
propagates into the caller's tick.
"""

import asyncio
import uuid
from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from .core.location_analysis import (
    Geofence,
    LocationSample,
    analyze_movement,
    check_geofences,
    distance_matrix,
)

logger = structlog.get_logger()


class RequestType(str, Enum):
    PROCESS_LOCATION_BATCH = "PROCESS_LOCATION_BATCH"
    CHECK_GEOFENCES = "CHECK_GEOFENCES"
    CALCULATE_DISTANCE_MATRIX = "CALCULATE_DISTANCE_MATRIX"


ERROR = "ERROR"

RESPONSE_TYPES = {
    RequestType.PROCESS_LOCATION_BATCH: "LOCATION_ANALYSIS_RESULT",
    RequestType.CHECK_GEOFENCES: "GEOFENCE_CHECK_RESULT",
    RequestType.CALCULATE_DISTANCE_MATRIX: "DISTANCE_MATRIX_RESULT",
}


@dataclass(frozen=True)
class WorkerRequest:
    correlation_id: str
    type: str
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class WorkerResponse:
    correlation_id: str
    type: str
    payload: Any


class LocationWorkerError(RuntimeError):
    """A request came back as an ``ERROR`` response."""


def _sample(value) -> LocationSample:
    if isinstance(value, LocationSample):
        return value
    return LocationSample(**value)


def _fence(value) -> Geofence:
    if isinstance(value, Geofence):
        return value
    return Geofence(**value)


def handle_request(request: WorkerRequest) -> WorkerResponse:
    """Run one request synchronously; any failure becomes an ``ERROR`` response."""
    try:
        request_type = RequestType(request.type)
        payload = request.payload

        if request_type is RequestType.PROCESS_LOCATION_BATCH:
            result: Any = asdict(
                analyze_movement(
                    [_sample(p) for p in payload["points"]], payload.get("time_window", 0.0)
                )
            )
        elif request_type is RequestType.CHECK_GEOFENCES:
            result = [
                asdict(r)
                for r in check_geofences(
                    _sample(payload["current_location"]),
                    [_fence(f) for f in payload["geofences"]],
                )
            ]
        else:
            destinations = [_sample(d) for d in payload["destinations"]]
            distances = distance_matrix(_sample(payload["origin"]), destinations)
            result = [
                {"index": i, "distance": float(d), "destination": asdict(dest)}
                for i, (d, dest) in enumerate(zip(distances, destinations))
            ]

        return WorkerResponse(request.correlation_id, RESPONSE_TYPES[request_type], result)

    except Exception as e:
        logger.warning(
            "Location worker request failed",
            correlation_id=request.correlation_id,
            request_type=request.type,
            error=str(e),
        )
        return WorkerResponse(
            request.correlation_id,
            ERROR,
            {"message": str(e) or type(e).__name__, "original_type": request.type},
        )


class LocationWorker:
    """Asyncio request/response worker for batch location analytics."""

    def __init__(self, executor: Optional[Executor] = None):
        self.executor = executor
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())
        logger.info("Location worker started")

    async def stop(self) -> None:
        if not self.running:
            return
        await self._queue.put(None)
        await self._task
        self._task = None

        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(LocationWorkerError("Location worker stopped"))
        self._pending.clear()
        logger.info("Location worker stopped")

    async def __aenter__(self) -> "LocationWorker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            request = await self._queue.get()
            if request is None:
                break
            response = await loop.run_in_executor(self.executor, handle_request, request)
            self._deliver(response)

    def _deliver(self, response: WorkerResponse) -> None:
        future = self._pending.pop(response.correlation_id, None)
        if future is None:
            logger.debug("Dropping response with no waiter", correlation_id=response.correlation_id)
            return
        if not future.done():
            future.set_result(response)

    async def send(self, request: WorkerRequest) -> WorkerResponse:
        """Post a prepared request and wait for the response with its id."""
        if not self.running:
            raise LocationWorkerError("Location worker is not running")

        future = asyncio.get_running_loop().create_future()
        self._pending[request.correlation_id] = future
        await self._queue.put(request)
        return await future

    async def request(
        self,
        request_type: RequestType,
        payload: Mapping[str, Any],
        timeout: Optional[float] = 5.0,
    ) -> Any:
        """
        Run a request and return its result payload.

        Raises:
            LocationWorkerError: The worker answered with an ``ERROR`` response
            asyncio.TimeoutError: No response within ``timeout`` seconds
        """
        request = WorkerRequest(
            correlation_id=uuid.uuid4().hex,
            type=request_type.value if isinstance(request_type, RequestType) else str(request_type),
            payload=payload,
        )
        try:
            response = await asyncio.wait_for(self.send(request), timeout)
        finally:
            self._pending.pop(request.correlation_id, None)

        if response.type == ERROR:
            raise LocationWorkerError(response.payload["message"])
        return response.payload
