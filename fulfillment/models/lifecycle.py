"""
Request Lifecycle - The single state machine shared by every category.

created -> paid -> queued -> assigned (agent) | allocated (inventory)
        -> in_progress -> completed | failed -> refunded
cancelled is reachable only before assignment.
"""

from fulfillment.models.api import RequestStatus, ServiceCategory

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.CREATED: frozenset({RequestStatus.PAID, RequestStatus.CANCELLED}),
    RequestStatus.PAID: frozenset(
        {RequestStatus.QUEUED, RequestStatus.FAILED, RequestStatus.CANCELLED}
    ),
    RequestStatus.QUEUED: frozenset(
        {
            RequestStatus.QUEUED,  # retryable failure while waiting
            RequestStatus.ASSIGNED,
            RequestStatus.ALLOCATED,
            RequestStatus.FAILED,
            RequestStatus.CANCELLED,
        }
    ),
    RequestStatus.ASSIGNED: frozenset(
        {
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
            RequestStatus.QUEUED,
            RequestStatus.FAILED,
        }
    ),
    RequestStatus.ALLOCATED: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.QUEUED, RequestStatus.FAILED}
    ),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.QUEUED, RequestStatus.FAILED}
    ),
    RequestStatus.FAILED: frozenset({RequestStatus.REFUNDED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.REFUNDED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.REFUNDED, RequestStatus.CANCELLED}
)

# Statuses swept by the dispatcher
DISPATCHABLE_STATUSES = frozenset({RequestStatus.PAID, RequestStatus.QUEUED})

# Statuses counted against an agent's load
AGENT_ACTIVE_STATUSES = frozenset({RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS})

COMPLETABLE_STATUSES = frozenset(
    {RequestStatus.ASSIGNED, RequestStatus.ALLOCATED, RequestStatus.IN_PROGRESS}
)

FAILABLE_STATUSES = frozenset(
    {
        RequestStatus.PAID,
        RequestStatus.QUEUED,
        RequestStatus.ASSIGNED,
        RequestStatus.ALLOCATED,
        RequestStatus.IN_PROGRESS,
    }
)

CANCELLABLE_STATUSES = frozenset(
    {RequestStatus.CREATED, RequestStatus.PAID, RequestStatus.QUEUED}
)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    """Check whether the lifecycle allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


def fulfillment_status(category: ServiceCategory) -> RequestStatus:
    """Status a request takes when the dispatcher hands it to its fulfiller."""
    return RequestStatus.ALLOCATED if category.is_inventory else RequestStatus.ASSIGNED
