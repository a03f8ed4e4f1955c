from __future__ import annotations


class NeatError(Exception):
    pass


class NodeNotFoundError(NeatError, ValueError):
    pass


class StructuralAnchorError(NeatError, ValueError):
    pass


class InputSizeError(NeatError, ValueError):
    pass


class DatasetShapeError(NeatError, ValueError):
    pass


class StoppingCriterionError(NeatError, ValueError):
    pass


class TournamentSizeError(NeatError, ValueError):
    pass


class IncompatibleParentsError(NeatError, ValueError):
    pass
