"""Run a ground classification kernel over tiles in parallel.

Each tile is an independent, blocking, CPU-bound unit of work.  At most
`max_workers` tiles are in flight at any time so memory stays bounded
by the size of that many rasters or cloths.  A tile that fails is
reported in the outcome map and never aborts its siblings; a stop
request lets in-flight tiles finish but dispatches nothing new.
"""

from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tqdm import tqdm

from ..common.errors import InsufficientData, KernelFailure
from ..common.pointcloud import PointCloud
from ..tiling.tiler import Tile
from ..utils.logging import get_logger

logger = get_logger(__name__)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"
CANCELLED = "cancelled"

Kernel = Callable[[PointCloud], Tuple[PointCloud, List[str]]]


@dataclass
class TileOutcome:
    """Result of running a kernel on one tile."""
    tile_id: int
    status: str
    result: Optional[PointCloud] = None
    reason: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == OK


def run_tile(kernel: Kernel, tile: Tile) -> TileOutcome:
    """Run a kernel on one clipped tile, capturing every failure.

    This is the unit of work shipped to the pool, so it must never
    raise: insufficient data becomes a skip, anything else a failure.
    """
    if tile.points is None or len(tile.points) == 0:
        return TileOutcome(tile.tile_id, SKIPPED, reason="InsufficientData: no points after clip")
    try:
        cloud, diagnostics = kernel(tile.points)
    except InsufficientData as exc:
        return TileOutcome(tile.tile_id, SKIPPED, reason=f"InsufficientData: {exc}")
    except Exception as exc:
        failure = KernelFailure(f"{type(exc).__name__}: {exc}")
        return TileOutcome(tile.tile_id, FAILED, reason=f"KernelFailure: {failure}")
    return TileOutcome(tile.tile_id, OK, result=cloud, diagnostics=list(diagnostics))


def _make_pool(backend: str, max_workers: int):
    if backend == "thread":
        return ThreadPoolExecutor(max_workers=max_workers)
    if backend == "process":
        return ProcessPoolExecutor(max_workers=max_workers)
    raise ValueError(f"unknown backend {backend!r}")


def run_over_tiles(
    tiles: Iterable[Tile],
    kernel: Kernel,
    max_workers: int = 4,
    backend: str = "process",
    stop_event: Optional[threading.Event] = None,
    progress: bool = False,
) -> Dict[int, TileOutcome]:
    """Run a kernel over all tiles with bounded concurrency.

    Parameters
    ----------
    tiles : iterable of Tile
        Clipped tiles.
    kernel : callable
        Picklable callable ``kernel(cloud) -> (cloud, diagnostics)``.
    max_workers : int, optional
        Pool size and maximum number of tiles in flight.
    backend : {"process", "thread"}, optional
        Worker pool flavour.
    stop_event : threading.Event, optional
        When set, no new tiles are dispatched; in-flight tiles finish
        and the rest are reported as cancelled.
    progress : bool, optional
        Show a tqdm progress bar.

    Returns
    -------
    dict
        Mapping from tile id to `TileOutcome`, one entry per tile.
    """
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")
    pending = list(tiles)
    pending.reverse()
    outcomes: Dict[int, TileOutcome] = {}
    in_flight: Dict[Future, int] = {}

    desc = f"Tiles ({getattr(kernel, 'name', 'kernel')})"
    with tqdm(total=len(pending), desc=desc, disable=not progress) as bar:
        with _make_pool(backend, max_workers) as pool:
            while pending or in_flight:
                stopping = stop_event is not None and stop_event.is_set()
                while pending and len(in_flight) < max_workers and not stopping:
                    tile = pending.pop()
                    in_flight[pool.submit(run_tile, kernel, tile)] = tile.tile_id
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    tile_id = in_flight.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        # Worker crashed (e.g. broken process pool)
                        outcome = TileOutcome(tile_id, FAILED, reason=f"KernelFailure: {type(exc).__name__}: {exc}")
                    outcomes[tile_id] = outcome
                    if outcome.status == FAILED:
                        logger.error(f"Tile {tile_id} failed: {outcome.reason}")
                    elif outcome.status == SKIPPED:
                        logger.info(f"Tile {tile_id} skipped: {outcome.reason}")
                    bar.update(1)

    for tile in pending:
        outcomes[tile.tile_id] = TileOutcome(tile.tile_id, CANCELLED, reason="stop requested before dispatch")
    if pending:
        logger.warning(f"Stop requested: {len(pending)} tiles were not dispatched")
    return outcomes
