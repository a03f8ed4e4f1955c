from __future__ import annotations

from dataclasses import dataclass

FLAG_ENABLED = 0b0001
FLAG_DROPMASK = 0b0010
FLAG_GATED = 0b0100
FLAG_PLASTIC = 0b1000

NODE_TYPES = ("input", "hidden", "output", "constant")


@dataclass(eq=False)
class NodeGene:
    node_id: int
    kind: str = "hidden"
    bias: float = 0.0
    activation: str = "logistic"
    value: float = 0.0
    state: float = 0.0
    old: float = 0.0
    mask: float = 1.0
    derivative: float = 0.0
    tag: str | None = None

    def reset_state(self) -> None:
        self.value = 0.0
        self.state = 0.0
        self.old = 0.0
        self.mask = 1.0
        self.derivative = 0.0


@dataclass(eq=False)
class ConnectionGene:
    src: int
    dst: int
    weight: float
    gain: float = 1.0
    gater: int | None = None
    enabled: bool = True
    plasticity_rate: float = 0.0
    dropmask: bool = False

    @property
    def flags(self) -> int:
        bits = 0
        if self.enabled:
            bits |= FLAG_ENABLED
        if self.dropmask:
            bits |= FLAG_DROPMASK
        if self.gater is not None:
            bits |= FLAG_GATED
        if self.plasticity_rate != 0.0:
            bits |= FLAG_PLASTIC
        return bits

    @property
    def is_self(self) -> bool:
        return self.src == self.dst
