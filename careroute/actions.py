from careroute.collection import BOOKABLE_FROM, RESCHEDULABLE_FROM
from careroute.errors import InvalidState
from careroute.models import Consultation, LabOrder, LabOrderStatus, WorkItem
from careroute.scheduler import profile_for


def _lab_order_actions(order: LabOrder, allowed: frozenset[str]) -> list[str]:
    actions: list[str] = []
    if order.status == LabOrderStatus.COLLECTION_FAILED:
        actions.append("rebook")
    elif order.status in BOOKABLE_FROM:
        actions.append("book_slot")
    if LabOrderStatus.RESULTS_UPLOADED in allowed:
        actions.append("upload_results")
    if order.status in RESCHEDULABLE_FROM:
        actions.extend(["reschedule", "cancel"])
    if order.status == LabOrderStatus.RESULTS_READY:
        actions.append("view_results")
    actions.append("view_tracking")
    return actions


def available_actions_for(item: WorkItem) -> list[str]:
    """Action names a requester can take on an item in its current status."""
    table = profile_for(item).table
    allowed = table.allowed_from(item.status)

    if table.is_terminal(item.status):
        return ["view_tracking"]

    if isinstance(item, LabOrder):
        return _lab_order_actions(item, allowed)
    if isinstance(item, Consultation):
        actions = ["view_tracking"]
        if "CANCELLED" in allowed:
            actions.insert(0, "cancel")
        return actions
    raise InvalidState(f"Unsupported work item type: {type(item).__name__}")
