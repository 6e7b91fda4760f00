from milhouse.state.plans import PlanStore
from milhouse.state.runs import RunRegistry, RunSelection
from milhouse.state.store import BoundRunState, StateStore
from milhouse.state.validation_index import ValidationIndex

__all__ = [
    "BoundRunState",
    "PlanStore",
    "RunRegistry",
    "RunSelection",
    "StateStore",
    "ValidationIndex",
]
