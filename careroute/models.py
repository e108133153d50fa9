"""
Domain models for work items, workers and the daily roster.
"""

from datetime import date, datetime, time, tzinfo
from enum import StrEnum

from pydantic import BaseModel, Field


class LabOrderStatus(StrEnum):
    ORDERED = "ORDERED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    SLOT_BOOKED = "SLOT_BOOKED"
    PHLEBOTOMIST_ASSIGNED = "PHLEBOTOMIST_ASSIGNED"
    PHLEBOTOMIST_EN_ROUTE = "PHLEBOTOMIST_EN_ROUTE"
    SAMPLE_COLLECTED = "SAMPLE_COLLECTED"
    COLLECTION_FAILED = "COLLECTION_FAILED"
    SAMPLE_IN_TRANSIT = "SAMPLE_IN_TRANSIT"
    DELIVERED_TO_LAB = "DELIVERED_TO_LAB"
    SAMPLE_RECEIVED = "SAMPLE_RECEIVED"
    SAMPLE_ISSUE = "SAMPLE_ISSUE"
    PROCESSING = "PROCESSING"
    RESULTS_PARTIAL = "RESULTS_PARTIAL"
    RESULTS_READY = "RESULTS_READY"
    RESULTS_UPLOADED = "RESULTS_UPLOADED"
    DOCTOR_REVIEWED = "DOCTOR_REVIEWED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ConsultationStatus(StrEnum):
    PENDING_ASSESSMENT = "PENDING_ASSESSMENT"
    AI_REVIEWED = "AI_REVIEWED"
    DOCTOR_REVIEWING = "DOCTOR_REVIEWING"
    NEEDS_INFO = "NEEDS_INFO"
    VIDEO_SCHEDULED = "VIDEO_SCHEDULED"
    VIDEO_COMPLETED = "VIDEO_COMPLETED"
    AWAITING_LABS = "AWAITING_LABS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class WorkItemKind(StrEnum):
    CONSULTATION = "consultation"
    LAB_ORDER = "lab_order"


class RiskTier(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class WorkerRole(StrEnum):
    DOCTOR = "DOCTOR"
    PHLEBOTOMIST = "PHLEBOTOMIST"


class RecipientRole(StrEnum):
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    PATIENT = "PATIENT"
    PHLEBOTOMIST = "PHLEBOTOMIST"


class Channel(StrEnum):
    PUSH = "PUSH"
    IN_APP = "IN_APP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"


class Worker(BaseModel):
    id: str
    name: str
    role: WorkerRole
    active: bool = True
    verified: bool = True
    daily_capacity: int = 0  # <= 0 means fully loaded
    last_assigned_at: datetime | None = None
    skill_tags: list[str] = Field(default_factory=list)  # verticals for doctors
    area_tags: list[str] = Field(default_factory=list)  # serviceable pincodes
    city: str | None = None
    senior: bool = False


class WorkRequirements(BaseModel):
    skill: str | None = None
    area: str | None = None
    city: str | None = None


class WorkItem(BaseModel):
    id: str
    status: str
    requester_id: str  # patient
    risk_tier: RiskTier = RiskTier.LOW
    requirements: WorkRequirements = Field(default_factory=WorkRequirements)
    assigned_worker_id: str | None = None
    # append-only; the current worker joins only once superseded
    previous_worker_ids: list[str] = Field(default_factory=list)
    assigned_at: datetime | None = None
    deadline: datetime | None = None
    cancellation_reason: str | None = None


class Consultation(WorkItem):
    status: ConsultationStatus = ConsultationStatus.PENDING_ASSESSMENT
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    rejection_reason: str | None = None


class LabOrder(WorkItem):
    status: LabOrderStatus = LabOrderStatus.ORDERED
    ordering_doctor_id: str
    tests: list[str] = Field(default_factory=list)
    booked_date: date | None = None
    booked_time_slot: str | None = None

    requires_fasting: bool = False
    patient_not_fasting: bool | None = None
    tube_count: int | None = None
    received_tube_count: int | None = None
    tube_count_mismatch: bool = False
    collection_attempts: int = 0
    collection_failed_reason: str | None = None
    critical_values: bool = False
    critical_flagged_at: datetime | None = None
    critical_acknowledged_at: datetime | None = None
    critical_acknowledged_by: str | None = None

    # patient booking reminders, at most one per day
    last_reminder_sent_at: datetime | None = None
    last_reminder_type: str | None = None
    # last lab SLA alert sent to operators, as "BREACH_TYPE:LEVEL"
    sla_escalated_at: datetime | None = None
    sla_escalation_reason: str | None = None

    # one stamp per lifecycle status, see LAB_ORDER_TRANSITIONS
    ordered_at: datetime | None = None
    slot_booked_at: datetime | None = None
    phlebotomist_assigned_at: datetime | None = None
    phlebotomist_en_route_at: datetime | None = None
    sample_collected_at: datetime | None = None
    collection_failed_at: datetime | None = None
    sample_in_transit_at: datetime | None = None
    delivered_to_lab_at: datetime | None = None
    sample_received_at: datetime | None = None
    sample_issue_at: datetime | None = None
    processing_started_at: datetime | None = None
    results_partial_at: datetime | None = None
    results_uploaded_at: datetime | None = None
    doctor_reviewed_at: datetime | None = None
    closed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None

    def slot_start(self, tz: tzinfo) -> datetime | None:
        """Start of the booked collection window; midnight when no slot is set."""
        if self.booked_date is None:
            return None
        start = time()
        if self.booked_time_slot:
            start = time.fromisoformat(self.booked_time_slot.split("-")[0].strip())
        return datetime.combine(self.booked_date, start, tzinfo=tz)


class DailyRoster(BaseModel):
    worker_id: str
    day: date
    total_bookings: int = 0
    completed_collections: int = 0
    failed_collections: int = 0


class Notification(BaseModel):
    recipient_id: str
    role: RecipientRole
    channel: Channel
    event_type: str
    title: str
    body: str
    data: dict = Field(default_factory=dict)
