"""Process-backed fitness workers.

A worker receives the dataset and cost once at start-up and afterwards only
genome snapshots (``Network.to_dict()``); it answers with the raw error.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Callable, Protocol, Sequence

from .network import Network

logger = logging.getLogger(__name__)

_DATASET: list[dict] = []
_COST: Any = "mse"


class WorkerPool(Protocol):
    async def evaluate(self, genome: Network) -> float: ...

    def terminate(self) -> None: ...


def serialize_dataset(dataset: Sequence[dict]) -> list[dict]:
    return [{"input": [float(x) for x in s["input"]], "output": [float(y) for y in s["output"]]} for s in dataset]


def _init_worker(dataset: list[dict], cost: Any) -> None:
    global _DATASET, _COST
    _DATASET = dataset
    _COST = cost


def _evaluate_worker(snapshot: dict) -> float:
    net = Network.from_dict(snapshot)
    return float(net.test(_DATASET, _COST)["error"])


class ProcessWorkerPool:
    def __init__(self, dataset: Sequence[dict], cost: str | Callable = "mse", threads: int = 2):
        self.threads = threads
        self._executor = ProcessPoolExecutor(
            max_workers=threads,
            initializer=_init_worker,
            initargs=(serialize_dataset(dataset), cost),
        )

    async def evaluate(self, genome: Network) -> float:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, _evaluate_worker, genome.to_dict())

    def terminate(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def create_worker_pool(dataset: Sequence[dict], cost: str | Callable, threads: int) -> WorkerPool | None:
    try:
        return ProcessWorkerPool(dataset, cost, threads)
    except (OSError, NotImplementedError, ValueError):
        logger.warning("Worker pool unavailable; falling back to single thread", exc_info=True)
        return None
