from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Protocol

from .blobs import BlobStore, DisplayHandle
from .chunking import MAX_DIM, Chunk, ChunkPlan, composite_results, plan_request
from .credentials import AuthState, Credential, fallback_credential, select_credential
from .errors import (
    AuthorizationError,
    ChunkPartialFailure,
    GeometryError,
    ImageryError,
    NetworkFailure,
    UnsupportedApiError,
)
from .geometry import TILE_SIZE, BoundingBox, TileCoordinate, tile_bounds
from .imagery import ImageResult, RequestSpec
from .layers import ApiType, LayerDescriptor, ensure_servable, select_api

logger = logging.getLogger(__name__)

AuthSource = Callable[[], AuthState]
Clock = Callable[[], datetime]


class NetworkLayer(Protocol):
    async def fetch(self, spec: RequestSpec) -> ImageResult:
        ...


class FetchStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one tile or export fetch as seen by the rendering side."""

    status: FetchStatus
    handle: DisplayHandle | None = None
    error: ImageryError | None = None

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCEEDED


DISCARDED = FetchOutcome(status=FetchStatus.DISCARDED)


@dataclass(frozen=True)
class RetryPolicy:
    """Caller-supplied retry behaviour for transient network failures.

    ``attempts`` counts the first try, so the default performs no retries.
    The delay before retry ``n`` is ``backoff * 2 ** (n - 1)`` seconds.
    """

    attempts: int = 1
    backoff: float = 0.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be at least 1.")
        if self.backoff < 0:
            raise ValueError("RetryPolicy.backoff cannot be negative.")

    def delay(self, retry_number: int) -> float:
        return self.backoff * (2 ** (retry_number - 1))


class PendingFetch:
    """In-flight fetch that the map widget may cancel before it completes."""

    def __init__(self, task: asyncio.Task, *, description: str) -> None:
        self._task = task
        self.description = description
        self._cancelled = False
        self._delivered = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if self._delivered or self._cancelled:
            return
        self._cancelled = True
        if self._task.done():
            self._discard_finished()
        else:
            self._task.cancel()
        logger.debug("Cancelled fetch of %s", self.description)

    async def outcome(self) -> FetchOutcome:
        if self._cancelled:
            await asyncio.gather(self._task, return_exceptions=True)
            self._discard_finished()
            return DISCARDED

        try:
            outcome = await self._task
        except asyncio.CancelledError:
            if self._cancelled:
                return DISCARDED
            raise

        if self._cancelled:
            self._discard_finished()
            return DISCARDED
        self._delivered = True
        return outcome

    def _discard_finished(self) -> None:
        if not self._task.done() or self._task.cancelled():
            return
        if self._task.exception() is not None:
            return
        handle = self._task.result().handle
        if handle is not None and not handle.released:
            handle.release()


class TileFetchOrchestrator:
    """Turns tile coordinates and export extents into display handles.

    Every fetch is independent: the only shared state is the read-only
    authentication snapshot returned by ``auth_source`` and the blob store
    that tracks live handles.
    """

    def __init__(
        self,
        network: NetworkLayer,
        auth_source: AuthSource,
        *,
        blob_store: BlobStore | None = None,
        retry_policy: RetryPolicy | None = None,
        tile_size: int = TILE_SIZE,
        max_dim: int = MAX_DIM,
        clock: Clock | None = None,
    ) -> None:
        if tile_size > max_dim:
            raise ValueError(
                f"Tile size {tile_size} exceeds the maximum request dimension {max_dim}."
            )
        self.network = network
        self.blob_store = blob_store or BlobStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.tile_size = tile_size
        self.max_dim = max_dim
        self._auth_source = auth_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def start_tile(self, coord: TileCoordinate, layer: LayerDescriptor) -> PendingFetch:
        task = asyncio.create_task(self.fetch_tile(coord, layer))
        return PendingFetch(
            task, description=f"tile {coord.zoom}/{coord.col}/{coord.row} of {layer.layer_id}"
        )

    def start_export(
        self, layer: LayerDescriptor, bbox: BoundingBox, width: int, height: int
    ) -> PendingFetch:
        task = asyncio.create_task(self.export_image(layer, bbox, width, height))
        return PendingFetch(task, description=f"{width}x{height} export of {layer.layer_id}")

    async def fetch_tile(self, coord: TileCoordinate, layer: LayerDescriptor) -> FetchOutcome:
        description = f"tile {coord.zoom}/{coord.col}/{coord.row} of {layer.layer_id}"
        try:
            bbox = tile_bounds(coord, self.tile_size)
            api_type = select_api(layer.capabilities, requires_processing=layer.requires_processing)
            ensure_servable(layer, api_type)
            spec = self._build_spec(api_type, layer, bbox, self.tile_size, self.tile_size, tile=coord)
            image = await self._fetch_with_fallback(spec)
        except ImageryError as exc:
            return self._failed(description, exc)
        return self._deliver(image)

    async def export_image(
        self, layer: LayerDescriptor, bbox: BoundingBox, width: int, height: int
    ) -> FetchOutcome:
        """Fetch an arbitrary extent, splitting it when a side exceeds ``max_dim``."""

        description = f"{width}x{height} export of {layer.layer_id}"
        try:
            bbox.validate()
            if width <= 0 or height <= 0:
                raise GeometryError(f"Export size must be positive, got {width}x{height}.")
            api_type = select_api(
                layer.capabilities,
                requires_processing=layer.requires_processing,
                allow_pre_tiled=False,
            )
            ensure_servable(layer, api_type)
            spec = self._build_spec(api_type, layer, bbox, width, height)
            image = await self._execute(plan_request(spec, self.max_dim))
        except ImageryError as exc:
            return self._failed(description, exc)
        return self._deliver(image)

    def current_credential(self) -> Credential:
        return select_credential(self._auth_source(), now=self._clock())

    def _build_spec(
        self,
        api_type: ApiType,
        layer: LayerDescriptor,
        bbox: BoundingBox,
        width: int,
        height: int,
        *,
        tile: TileCoordinate | None = None,
    ) -> RequestSpec:
        return RequestSpec(
            api_type=api_type,
            layer=layer,
            bbox=bbox,
            width=width,
            height=height,
            credential=self.current_credential(),
            evalscript=layer.evalscript if api_type is ApiType.PROCESSING else None,
            tile=tile,
        )

    async def _execute(self, planned: RequestSpec | ChunkPlan) -> ImageResult:
        if isinstance(planned, ChunkPlan):
            return await self._execute_plan(planned)
        return await self._fetch_with_fallback(planned)

    async def _execute_plan(self, plan: ChunkPlan) -> ImageResult:
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._fetch_chunk(chunk)) for chunk in plan.chunks
        ]
        try:
            results = await asyncio.gather(*tasks)
        finally:
            leftovers = [task for task in tasks if not task.done()]
            for task in leftovers:
                task.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        return composite_results(plan, results)

    async def _fetch_chunk(self, chunk: Chunk) -> ImageResult:
        try:
            return await self._fetch_with_fallback(chunk.spec)
        except (NetworkFailure, AuthorizationError) as exc:
            raise ChunkPartialFailure(chunk.row, chunk.col, exc) from exc

    async def _fetch_with_fallback(self, spec: RequestSpec) -> ImageResult:
        try:
            return await self._fetch_with_retry(spec)
        except AuthorizationError as exc:
            fallback = fallback_credential(self._auth_source(), spec.credential, now=self._clock())
            if fallback is None:
                raise
            logger.info(
                "%s credential rejected (%s); retrying once with the %s credential.",
                spec.credential.kind.value,
                exc.status_code,
                fallback.kind.value,
            )
            return await self._fetch_with_retry(replace(spec, credential=fallback))

    async def _fetch_with_retry(self, spec: RequestSpec) -> ImageResult:
        policy = self.retry_policy
        attempt = 1
        while True:
            try:
                return await self.network.fetch(spec)
            except NetworkFailure as exc:
                if attempt >= policy.attempts:
                    raise
                delay = policy.delay(attempt)
                logger.info(
                    "Retrying %s request after failure (%s/%s) in %.2fs: %s",
                    spec.api_type.value,
                    attempt,
                    policy.attempts,
                    delay,
                    exc,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                attempt += 1

    def _deliver(self, image: ImageResult) -> FetchOutcome:
        handle = self.blob_store.create_handle(image)
        return FetchOutcome(status=FetchStatus.SUCCEEDED, handle=handle)

    def _failed(self, description: str, exc: ImageryError) -> FetchOutcome:
        if isinstance(exc, (GeometryError, UnsupportedApiError)):
            logger.warning("Cannot request %s: %s", description, exc)
        else:
            logger.warning("Fetching %s failed: %s", description, exc)
        return FetchOutcome(status=FetchStatus.FAILED, error=exc)
