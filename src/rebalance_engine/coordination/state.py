from rebalance_engine.exceptions import InvalidTransitionError
from rebalance_engine.models import RebalanceRequest, RebalanceStatus, TERMINAL_STATUSES

# pending -> running -> {completed | cancelled | error}
_ALLOWED_TRANSITIONS = {
    RebalanceStatus.PENDING: {RebalanceStatus.RUNNING, RebalanceStatus.CANCELLED, RebalanceStatus.ERROR},
    RebalanceStatus.RUNNING: {RebalanceStatus.RUNNING, RebalanceStatus.COMPLETED,
                              RebalanceStatus.CANCELLED, RebalanceStatus.ERROR},
}


def can_transition(current: RebalanceStatus, target: RebalanceStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def transition(request: RebalanceRequest, status: RebalanceStatus) -> RebalanceStatus:
    """Validate a status change; terminal states never change again"""
    if not can_transition(request.status, status):
        raise InvalidTransitionError(
            f"Rebalance request {request.id} cannot move from {request.status.value} to {status.value}"
        )
    return status
