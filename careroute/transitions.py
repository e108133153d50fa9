"""
Compiled-in status graphs for work items.

Each table is an adjacency map (status -> allowed next statuses) plus the
timestamp field stamped when an item enters a status. Cycles such as the
collection rebook edge are plain edges.
"""

from collections.abc import Mapping

from careroute.errors import InvalidTransition
from careroute.models import ConsultationStatus, LabOrderStatus


class TransitionTable:
    def __init__(
        self,
        edges: Mapping[str, list[str]],
        timestamp_fields: Mapping[str, str],
    ) -> None:
        self._edges: dict[str, frozenset[str]] = {
            str(k): frozenset(str(v) for v in vs) for k, vs in edges.items()
        }
        self._timestamp_fields = {str(k): v for k, v in timestamp_fields.items()}

    def is_valid_transition(self, from_status: str, to_status: str) -> bool:
        allowed = self._edges.get(str(from_status))
        if allowed is None:
            return False
        return str(to_status) in allowed

    def timestamp_field(self, status: str) -> str | None:
        return self._timestamp_fields.get(str(status))

    def allowed_from(self, status: str) -> frozenset[str]:
        return self._edges.get(str(status), frozenset())

    def is_terminal(self, status: str) -> bool:
        return str(status) in self._edges and not self._edges[str(status)]

    def statuses(self) -> list[str]:
        return list(self._edges)

    def guard(self, from_status: str, to_status: str) -> None:
        if not self.is_valid_transition(from_status, to_status):
            raise InvalidTransition(str(from_status), str(to_status))


S = LabOrderStatus

LAB_ORDER_TRANSITIONS = TransitionTable(
    edges={
        S.ORDERED: [S.PAYMENT_PENDING, S.SLOT_BOOKED, S.RESULTS_UPLOADED, S.CANCELLED, S.EXPIRED],
        S.PAYMENT_PENDING: [S.PAYMENT_COMPLETED, S.CANCELLED],
        S.PAYMENT_COMPLETED: [S.SLOT_BOOKED, S.CANCELLED],
        S.SLOT_BOOKED: [S.PHLEBOTOMIST_ASSIGNED, S.CANCELLED],
        S.PHLEBOTOMIST_ASSIGNED: [S.PHLEBOTOMIST_EN_ROUTE, S.SLOT_BOOKED, S.CANCELLED],  # reschedule
        S.PHLEBOTOMIST_EN_ROUTE: [S.SAMPLE_COLLECTED, S.COLLECTION_FAILED],
        S.SAMPLE_COLLECTED: [S.SAMPLE_IN_TRANSIT, S.DELIVERED_TO_LAB],
        S.COLLECTION_FAILED: [S.SLOT_BOOKED, S.CANCELLED],  # rebook or cancel
        S.SAMPLE_IN_TRANSIT: [S.DELIVERED_TO_LAB],
        S.DELIVERED_TO_LAB: [S.SAMPLE_RECEIVED],
        S.SAMPLE_RECEIVED: [S.PROCESSING, S.SAMPLE_ISSUE],
        S.SAMPLE_ISSUE: [S.ORDERED],  # free recollection
        S.PROCESSING: [S.RESULTS_PARTIAL, S.RESULTS_READY],
        S.RESULTS_PARTIAL: [S.RESULTS_READY],
        S.RESULTS_READY: [S.DOCTOR_REVIEWED],
        S.RESULTS_UPLOADED: [S.DOCTOR_REVIEWED, S.CANCELLED],
        S.DOCTOR_REVIEWED: [S.CLOSED],
        S.CLOSED: [],
        S.CANCELLED: [],
        S.EXPIRED: [],
    },
    timestamp_fields={
        S.ORDERED: "ordered_at",
        S.PAYMENT_PENDING: "ordered_at",
        S.PAYMENT_COMPLETED: "ordered_at",
        S.SLOT_BOOKED: "slot_booked_at",
        S.PHLEBOTOMIST_ASSIGNED: "phlebotomist_assigned_at",
        S.PHLEBOTOMIST_EN_ROUTE: "phlebotomist_en_route_at",
        S.SAMPLE_COLLECTED: "sample_collected_at",
        S.COLLECTION_FAILED: "collection_failed_at",
        S.SAMPLE_IN_TRANSIT: "sample_in_transit_at",
        S.DELIVERED_TO_LAB: "delivered_to_lab_at",
        S.SAMPLE_RECEIVED: "sample_received_at",
        S.SAMPLE_ISSUE: "sample_issue_at",
        S.PROCESSING: "processing_started_at",
        S.RESULTS_PARTIAL: "results_partial_at",
        S.RESULTS_READY: "results_uploaded_at",
        S.RESULTS_UPLOADED: "results_uploaded_at",
        S.DOCTOR_REVIEWED: "doctor_reviewed_at",
        S.CLOSED: "closed_at",
        S.CANCELLED: "cancelled_at",
        S.EXPIRED: "expired_at",
    },
)

C = ConsultationStatus

CONSULTATION_TRANSITIONS = TransitionTable(
    edges={
        C.PENDING_ASSESSMENT: [C.AI_REVIEWED, C.CANCELLED],
        C.AI_REVIEWED: [C.DOCTOR_REVIEWING, C.CANCELLED],
        C.DOCTOR_REVIEWING: [
            C.APPROVED,
            C.VIDEO_SCHEDULED,
            C.NEEDS_INFO,
            C.REJECTED,
            C.CANCELLED,
        ],
        C.VIDEO_SCHEDULED: [C.VIDEO_COMPLETED, C.DOCTOR_REVIEWING],
        C.VIDEO_COMPLETED: [C.APPROVED, C.AWAITING_LABS, C.REJECTED],
        C.AWAITING_LABS: [C.APPROVED, C.REJECTED],
        C.NEEDS_INFO: [C.DOCTOR_REVIEWING],
        C.APPROVED: [],
        C.REJECTED: [],
        C.CANCELLED: [],
    },
    timestamp_fields={
        C.DOCTOR_REVIEWING: "assigned_at",
        C.APPROVED: "completed_at",
        C.REJECTED: "completed_at",
        C.CANCELLED: "cancelled_at",
    },
)
