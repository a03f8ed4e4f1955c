"""Structure-of-arrays packing of a network's connection list.

The slab mirrors ``Network.connections`` in parallel numpy arrays (weights,
endpoint indices, flag bytes and optional gain / plasticity channels) plus a
CSR fan-out index used by the fast forward pass. It is rebuilt lazily when the
owning network marks it dirty.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np

from .activations import squash
from .genes import FLAG_ENABLED, ConnectionGene

if TYPE_CHECKING:
    from .network import Network

logger = logging.getLogger(__name__)

GROWTH_FACTOR = 1.75
COOPERATIVE_GROWTH_FACTOR = 1.25
DEFAULT_CHUNK_SIZE = 50_000
LARGE_GRAPH_CONNECTIONS = 200_000
MIN_ADAPTIVE_CHUNK = 5_000
CONNECTIONS_PER_MS = 15_000


@dataclass(frozen=True)
class SlabView:
    weights: np.ndarray
    src: np.ndarray
    dst: np.ndarray
    flags: np.ndarray
    gain: np.ndarray
    plastic: np.ndarray | None
    version: int
    used: int
    capacity: int


class ConnectionSlab:
    def __init__(self, network: "Network"):
        self.network = network
        self.weights: np.ndarray | None = None
        self.src: np.ndarray | None = None
        self.dst: np.ndarray | None = None
        self.flags: np.ndarray | None = None
        self.gain: np.ndarray | None = None
        self.plastic: np.ndarray | None = None
        self.capacity = 0
        self.used = 0
        self.version = 0
        self.out_start: np.ndarray | None = None
        self.out_order: np.ndarray | None = None
        self.async_builds = 0
        self._pre: np.ndarray | None = None
        self._acts: np.ndarray | None = None
        self._saw_gain = False
        self._saw_plastic = False

    @property
    def growth_factor(self) -> float:
        return COOPERATIVE_GROWTH_FACTOR if self.network.runtime.browser_like else GROWTH_FACTOR

    @property
    def weight_dtype(self) -> type:
        return np.float32 if self.network.runtime.float32_mode else np.float64

    def _pooling(self) -> bool:
        return self.network.runtime.enable_slab_array_pooling

    def _acquire(self, kind: str, dtype: type) -> np.ndarray:
        return self.network.arena.arrays.acquire(kind, dtype, self.capacity, enabled=self._pooling())

    def _release(self, kind: str, arr: np.ndarray | None) -> None:
        self.network.arena.arrays.release(kind, arr, enabled=self._pooling())

    def release(self) -> None:
        for kind in ("weights", "src", "dst", "flags", "gain", "plastic"):
            self._release(kind, getattr(self, kind))
            setattr(self, kind, None)
        self.capacity = 0
        self.used = 0
        self.out_start = None
        self.out_order = None
        self.network.dirty.slab = True
        self.network.dirty.adjacency = True

    def _ensure_capacity(self, required: int) -> None:
        dtype = self.weight_dtype
        if self.weights is not None and required <= self.capacity and self.weights.dtype == dtype:
            return

        capacity = self.capacity
        if capacity == 0:
            capacity = max(1, math.ceil(required * self.growth_factor))
        while capacity < required:
            capacity = math.ceil(capacity * self.growth_factor)

        for kind in ("weights", "src", "dst", "flags", "gain", "plastic"):
            self._release(kind, getattr(self, kind))
        self.gain = None
        self.plastic = None

        self.capacity = capacity
        self.weights = self._acquire("weights", dtype)
        self.src = self._acquire("src", np.uint32)
        self.dst = self._acquire("dst", np.uint32)
        self.flags = self._acquire("flags", np.uint8)

    def _begin(self, count: int) -> None:
        self._ensure_capacity(count)
        self._saw_gain = False
        self._saw_plastic = False

    def _pack(self, conns: Sequence[ConnectionGene], index: dict[int, int], start: int, stop: int) -> None:
        weights, src, dst, flags = self.weights, self.src, self.dst, self.flags
        for i in range(start, stop):
            conn = conns[i]
            weights[i] = conn.weight
            src[i] = index[conn.src]
            dst[i] = index[conn.dst]
            flags[i] = conn.flags

            if conn.gain != 1.0:
                if self.gain is None:
                    self.gain = self._acquire("gain", self.weight_dtype)
                    self.gain[:i] = 1.0
                self._saw_gain = True
            if self.gain is not None:
                self.gain[i] = conn.gain

            if conn.plasticity_rate != 0.0:
                if self.plastic is None:
                    self.plastic = self._acquire("plastic", self.weight_dtype)
                    for j in range(i):
                        self.plastic[j] = conns[j].plasticity_rate
                self._saw_plastic = True
            if self.plastic is not None:
                self.plastic[i] = conn.plasticity_rate

    def _finish(self, count: int) -> None:
        if not self._saw_gain and self.gain is not None:
            self._release("gain", self.gain)
            self.gain = None
        if not self._saw_plastic and self.plastic is not None:
            self._release("plastic", self.plastic)
            self.plastic = None

        self.used = count
        net = self.network
        net.dirty.slab = False
        net.dirty.adjacency = True
        self.version += 1

    def rebuild(self, force: bool = False) -> None:
        net = self.network
        if not net.dirty.slab and not force:
            return
        index = net.node_index()
        conns = net.connections
        count = len(conns)
        self._begin(count)
        self._pack(conns, index, 0, count)
        self._finish(count)

    def chunk_size(self, total: int, requested: int | None = None) -> int:
        chunk = requested or DEFAULT_CHUNK_SIZE
        if total > LARGE_GRAPH_CONNECTIONS:
            target_ms = self.network.runtime.slab_chunk_target_ms
            if target_ms:
                adaptive = int(min(max(CONNECTIONS_PER_MS * target_ms, MIN_ADAPTIVE_CHUNK), DEFAULT_CHUNK_SIZE))
                chunk = min(chunk, adaptive)
            else:
                chunk = min(chunk, DEFAULT_CHUNK_SIZE)
        return max(1, chunk)

    async def rebuild_async(self, chunk_size: int | None = None, force: bool = False) -> None:
        net = self.network
        if not net.dirty.slab and not force:
            return
        if not net.runtime.browser_like:
            self.rebuild(force=True)
            return

        index = net.node_index()
        conns = list(net.connections)
        count = len(conns)
        chunk = self.chunk_size(count, chunk_size)
        self._begin(count)
        for start in range(0, count, chunk):
            self._pack(conns, index, start, min(start + chunk, count))
            await asyncio.sleep(0)
        self._finish(count)
        self.async_builds += 1

    def view(self) -> SlabView:
        self.rebuild()
        n = self.used
        if self.gain is not None:
            gain = self.gain[:n]
        else:
            gain = np.ones(n, dtype=self.weight_dtype)
        return SlabView(
            weights=self.weights[:n],
            src=self.src[:n],
            dst=self.dst[:n],
            flags=self.flags[:n],
            gain=gain,
            plastic=self.plastic[:n] if self.plastic is not None else None,
            version=self.version,
            used=n,
            capacity=self.capacity,
        )

    def build_adjacency(self) -> None:
        net = self.network
        self.rebuild()
        if not net.dirty.adjacency and self.out_start is not None:
            return

        node_count = len(net.nodes)
        src = self.src[: self.used].astype(np.int64)
        counts = np.bincount(src, minlength=node_count)
        out_start = np.zeros(node_count + 1, dtype=np.uint32)
        out_start[1:] = np.cumsum(counts)
        self.out_start = out_start
        self.out_order = np.argsort(src, kind="stable").astype(np.uint32)
        net.dirty.adjacency = False

    def can_use_fast_path(self, training: bool = False) -> bool:
        net = self.network
        return (
            not training
            and net.enforce_acyclic
            and not net.dirty.topo
            and not net.gates
            and not net.selfconns
            and net.dropout == 0
            and net.weight_noise_std == 0
            and not any(net.stochastic_depth)
        )

    def fast_activate(self, inputs: Sequence[float]) -> list[float]:
        net = self.network
        if net.enforce_acyclic and net.dirty.topo:
            net.compute_topo_order()
        if not self.can_use_fast_path():
            return net.activate_nodes(inputs)

        self.build_adjacency()
        if self.out_start is None or self.out_order is None:
            return net.activate_nodes(inputs)

        node_count = len(net.nodes)
        if self._pre is None or self._pre.shape[0] != node_count:
            self._pre = np.zeros(node_count, dtype=np.float64)
            self._acts = np.zeros(node_count, dtype=np.float64)
        pre, acts = self._pre, self._acts
        pre.fill(0.0)
        acts.fill(0.0)

        n = self.used
        weights = self.weights[:n]
        dst = self.dst[:n]
        enabled = (self.flags[:n] & FLAG_ENABLED) != 0
        gain = self.gain[:n] if self.gain is not None else None
        out_start, out_order = self.out_start, self.out_order
        index = net.node_index()

        for i in range(net.input):
            acts[i] = float(inputs[i])
            net.nodes[i].value = acts[i]

        for nid in net.topo_order:
            i = index[nid]
            node = net.nodes[i]
            if node.kind != "input":
                state = pre[i] + node.bias
                node.state = float(state)
                node.mask = 1.0
                node.value = squash(node.activation, state)
                acts[i] = node.value

            edges = out_order[out_start[i] : out_start[i + 1]]
            if edges.size == 0:
                continue
            edges = edges[enabled[edges]]
            contrib = acts[i] * weights[edges].astype(np.float64)
            if gain is not None:
                contrib = contrib * gain[edges]
            np.add.at(pre, dst[edges].astype(np.int64), contrib)

        return [float(acts[i]) for i in range(node_count - net.output, node_count)]
