"""Free-list arenas for recycled nodes and slab arrays.

An object is either owned by exactly one network or parked in an arena's free
list. Acquire always returns a fully reset object.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .config import RuntimeConfig
from .genes import NodeGene


@dataclass
class _KeyStats:
    created: int = 0
    reused: int = 0
    max_retained: int = 0


class NodePool:
    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self._free: list[NodeGene] = []
        self.fresh = 0
        self.reused = 0
        self.high_water_mark = 0

    def acquire(
        self,
        node_id: int,
        kind: str,
        activation: str,
        bias: float,
    ) -> NodeGene:
        if self._free:
            node = self._free.pop()
            self.reused += 1
            node.node_id = node_id
            node.kind = kind
            node.activation = activation
            node.bias = bias
            node.tag = None
            node.reset_state()
            return node
        self.fresh += 1
        return NodeGene(node_id=node_id, kind=kind, bias=bias, activation=activation)

    def release(self, node: NodeGene) -> None:
        if len(self._free) >= self.max_size:
            return
        node.reset_state()
        self._free.append(node)
        self.high_water_mark = max(self.high_water_mark, len(self._free))

    def __len__(self) -> int:
        return len(self._free)

    def stats(self) -> dict[str, float]:
        total = self.reused + self.fresh
        return {
            "size": len(self._free),
            "high_water_mark": self.high_water_mark,
            "reused": self.reused,
            "fresh": self.fresh,
            "recycled_ratio": self.reused / total if total else 0.0,
        }

    def clear(self) -> None:
        self._free.clear()
        self.fresh = 0
        self.reused = 0
        self.high_water_mark = 0


class SlabArrayPool:
    """Retention stacks of typed arrays keyed by (kind, itemsize, length)."""

    def __init__(self, max_per_key: int = 4):
        self.max_per_key = max_per_key
        self._stacks: dict[tuple[str, int, int], list[np.ndarray]] = {}
        self._key_stats: dict[tuple[str, int, int], _KeyStats] = {}
        self.fresh = 0
        self.pooled = 0

    @staticmethod
    def key(kind: str, dtype: np.dtype, length: int) -> tuple[str, int, int]:
        return (kind, np.dtype(dtype).itemsize, int(length))

    def _cap(self) -> int:
        return max(0, int(self.max_per_key))

    def acquire(self, kind: str, dtype: np.dtype, length: int, enabled: bool = True) -> np.ndarray:
        key = self.key(kind, dtype, length)
        stats = self._key_stats.setdefault(key, _KeyStats())
        stack = self._stacks.get(key)
        if enabled and stack:
            arr = stack.pop()
            if arr.dtype == np.dtype(dtype):
                arr.fill(0)
                stats.reused += 1
                self.pooled += 1
                return arr
        stats.created += 1
        self.fresh += 1
        return np.zeros(int(length), dtype=dtype)

    def release(self, kind: str, arr: np.ndarray | None, enabled: bool = True) -> None:
        if arr is None or not enabled:
            return
        key = self.key(kind, arr.dtype, arr.shape[0])
        stack = self._stacks.setdefault(key, [])
        if len(stack) >= self._cap():
            return
        stack.append(arr)
        stats = self._key_stats.setdefault(key, _KeyStats())
        stats.max_retained = max(stats.max_retained, len(stack))

    def stats(self) -> dict:
        return {
            "fresh": self.fresh,
            "pooled": self.pooled,
            "pool": {
                f"{kind}:{width}:{length}": {
                    "created": s.created,
                    "reused": s.reused,
                    "max_retained": s.max_retained,
                }
                for (kind, width, length), s in self._key_stats.items()
            },
        }

    def clear(self) -> None:
        self._stacks.clear()
        self._key_stats.clear()
        self.fresh = 0
        self.pooled = 0


@dataclass
class Arena:
    nodes: NodePool = field(default_factory=NodePool)
    arrays: SlabArrayPool = field(default_factory=SlabArrayPool)

    @classmethod
    def from_runtime(cls, runtime: RuntimeConfig) -> "Arena":
        return cls(
            nodes=NodePool(max_size=runtime.node_pool_max),
            arrays=SlabArrayPool(max_per_key=runtime.slab_pool_max_per_key),
        )


DEFAULT_ARENA = Arena()
