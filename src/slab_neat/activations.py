from __future__ import annotations

from typing import Callable

import jax.numpy as jnp
import numpy as np

SELU_ALPHA = 1.6732632423543772
SELU_SCALE = 1.0507009873554805


def logistic(x, derivative: bool = False):
    fx = 1.0 / (1.0 + np.exp(-x))
    return fx * (1.0 - fx) if derivative else fx


def tanh(x, derivative: bool = False):
    return 1.0 - np.tanh(x) ** 2 if derivative else np.tanh(x)


def relu(x, derivative: bool = False):
    if derivative:
        return np.where(x > 0, 1.0, 0.0)
    return np.maximum(0.0, x)


def identity(x, derivative: bool = False):
    return np.ones_like(x, dtype=float) if derivative else x


def step(x, derivative: bool = False):
    if derivative:
        return np.zeros_like(x, dtype=float)
    return np.where(x > 0, 1.0, 0.0)


def softsign(x, derivative: bool = False):
    d = 1.0 + np.abs(x)
    return 1.0 / (d * d) if derivative else x / d


def sinusoid(x, derivative: bool = False):
    return np.cos(x) if derivative else np.sin(x)


def gaussian(x, derivative: bool = False):
    d = np.exp(-(x * x))
    return -2.0 * x * d if derivative else d


def bent_identity(x, derivative: bool = False):
    d = np.sqrt(x * x + 1.0)
    return x / (2.0 * d) + 1.0 if derivative else (d - 1.0) / 2.0 + x


def bipolar(x, derivative: bool = False):
    if derivative:
        return np.zeros_like(x, dtype=float)
    return np.where(x > 0, 1.0, -1.0)


def bipolar_sigmoid(x, derivative: bool = False):
    d = 2.0 / (1.0 + np.exp(-x)) - 1.0
    return 0.5 * (1.0 + d) * (1.0 - d) if derivative else d


def hard_tanh(x, derivative: bool = False):
    if derivative:
        return np.where((x > -1) & (x < 1), 1.0, 0.0)
    return np.clip(x, -1.0, 1.0)


def absolute(x, derivative: bool = False):
    if derivative:
        return np.where(x < 0, -1.0, 1.0)
    return np.abs(x)


def inverse(x, derivative: bool = False):
    return -np.ones_like(x, dtype=float) if derivative else 1.0 - x


def selu(x, derivative: bool = False):
    fx = np.where(x > 0, x, SELU_ALPHA * np.exp(x) - SELU_ALPHA)
    if derivative:
        return np.where(x > 0, SELU_SCALE, (fx + SELU_ALPHA) * SELU_SCALE)
    return fx * SELU_SCALE


def softplus(x, derivative: bool = False):
    if derivative:
        return 1.0 / (1.0 + np.exp(-x))
    return np.logaddexp(0.0, x)


ACTIVATIONS: dict[str, Callable] = {
    "logistic": logistic,
    "tanh": tanh,
    "relu": relu,
    "identity": identity,
    "step": step,
    "softsign": softsign,
    "sinusoid": sinusoid,
    "gaussian": gaussian,
    "bent_identity": bent_identity,
    "bipolar": bipolar,
    "bipolar_sigmoid": bipolar_sigmoid,
    "hard_tanh": hard_tanh,
    "absolute": absolute,
    "inverse": inverse,
    "selu": selu,
    "softplus": softplus,
}

ACTIVATION_TO_ID = {name: i for i, name in enumerate(ACTIVATIONS)}

ID_TO_ACTIVATION = {v: k for k, v in ACTIVATION_TO_ID.items()}


def squash(name: str, x: float, derivative: bool = False) -> float:
    return float(ACTIVATIONS[name](x, derivative))


def apply_activation_by_id(act_id: int, x: jnp.ndarray) -> jnp.ndarray:
    a = ACTIVATION_TO_ID
    y = x
    y = jnp.where(act_id == a["logistic"], jax_sigmoid(x), y)
    y = jnp.where(act_id == a["tanh"], jnp.tanh(x), y)
    y = jnp.where(act_id == a["relu"], jnp.maximum(0.0, x), y)
    y = jnp.where(act_id == a["step"], jnp.where(x > 0, 1.0, 0.0), y)
    y = jnp.where(act_id == a["softsign"], x / (1.0 + jnp.abs(x)), y)
    y = jnp.where(act_id == a["sinusoid"], jnp.sin(x), y)
    y = jnp.where(act_id == a["gaussian"], jnp.exp(-(x * x)), y)
    y = jnp.where(act_id == a["bent_identity"], (jnp.sqrt(x * x + 1.0) - 1.0) / 2.0 + x, y)
    y = jnp.where(act_id == a["bipolar"], jnp.where(x > 0, 1.0, -1.0), y)
    y = jnp.where(act_id == a["bipolar_sigmoid"], 2.0 * jax_sigmoid(x) - 1.0, y)
    y = jnp.where(act_id == a["hard_tanh"], jnp.clip(x, -1.0, 1.0), y)
    y = jnp.where(act_id == a["absolute"], jnp.abs(x), y)
    y = jnp.where(act_id == a["inverse"], 1.0 - x, y)
    y = jnp.where(
        act_id == a["selu"],
        SELU_SCALE * jnp.where(x > 0, x, SELU_ALPHA * jnp.exp(x) - SELU_ALPHA),
        y,
    )
    y = jnp.where(act_id == a["softplus"], jnp.logaddexp(0.0, x), y)
    return y


def jax_sigmoid(x: jnp.ndarray) -> jnp.ndarray:
    return 1.0 / (1.0 + jnp.exp(-x))
