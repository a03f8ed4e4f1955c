from __future__ import annotations

from typing import Callable, Sequence

import numpy as np

EPSILON = 1e-15


def mse(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.asarray(outputs, dtype=float)
    return float(np.mean((t - o) ** 2))


def mae(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.asarray(outputs, dtype=float)
    return float(np.mean(np.abs(t - o)))


def cross_entropy(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.clip(np.asarray(outputs, dtype=float), EPSILON, 1.0 - EPSILON)
    return float(-np.mean(t * np.log(o) + (1.0 - t) * np.log(1.0 - o)))


def binary(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.asarray(outputs, dtype=float)
    return float(np.sum(np.round(t * 2) != np.round(o * 2)))


def mape(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.asarray(outputs, dtype=float)
    return float(np.mean(np.abs((o - t) / np.maximum(np.abs(t), EPSILON))))


def msle(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.log(np.maximum(np.asarray(targets, dtype=float), EPSILON))
    o = np.log(np.maximum(np.asarray(outputs, dtype=float), EPSILON))
    return float(np.mean((t - o) ** 2))


def hinge(targets: Sequence[float], outputs: Sequence[float]) -> float:
    t = np.asarray(targets, dtype=float)
    o = np.asarray(outputs, dtype=float)
    return float(np.mean(np.maximum(0.0, 1.0 - t * o)))


COSTS: dict[str, Callable[[Sequence[float], Sequence[float]], float]] = {
    "mse": mse,
    "mae": mae,
    "cross_entropy": cross_entropy,
    "binary": binary,
    "mape": mape,
    "msle": msle,
    "hinge": hinge,
}


def resolve_cost(cost: str | Callable) -> Callable[[Sequence[float], Sequence[float]], float]:
    if callable(cost):
        return cost
    if cost not in COSTS:
        raise ValueError(f"Unsupported cost: {cost}")
    return COSTS[cost]
