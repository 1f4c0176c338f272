from .cancellation import CancellationCheck, CancellationChecker
from .idempotence import ResumptionPlanner, orders_to_raw, reconstruct_decision_text
from .state import can_transition, transition

__all__ = [
    'CancellationCheck',
    'CancellationChecker',
    'ResumptionPlanner',
    'orders_to_raw',
    'reconstruct_decision_text',
    'can_transition',
    'transition',
]
