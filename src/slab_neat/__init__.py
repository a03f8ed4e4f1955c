"""NEAT neuroevolution with slab-packed genomes, speciation and multi-objective ranking."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .config import EvolveOptions, NeatConfig, RuntimeConfig, ScheduleHook
from .mutation import ALL, FFW, MutationOp
from .network import Network

if TYPE_CHECKING:
    from .neat import Neat
    from .phenotype import SlabPhenotype

__all__ = [
    "ALL",
    "EvolveOptions",
    "FFW",
    "MutationOp",
    "Neat",
    "NeatConfig",
    "Network",
    "RuntimeConfig",
    "ScheduleHook",
    "SlabPhenotype",
]


def __getattr__(name: str):
    if name == "Neat":
        from .neat import Neat as _Neat

        return _Neat
    if name == "SlabPhenotype":
        from .phenotype import SlabPhenotype as _SlabPhenotype

        return _SlabPhenotype
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
