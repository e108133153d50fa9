"""
Runtime configuration.

Values come from environment variables prefixed with ``CAREROUTE_``, e.g.
``CAREROUTE_MAX_BOUNCES=3`` or ``CAREROUTE_OPERATOR_IDS='["admin-1"]'``.
"""

from datetime import timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from careroute.models import RiskTier


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CAREROUTE_",
        extra="ignore",
    )

    # Assignment SLA per risk tier, in hours
    sla_hours_low: float = Field(default=4, description="SLA window for LOW risk items")
    sla_hours_medium: float = Field(default=2, description="SLA window for MEDIUM risk items")
    sla_hours_high: float = Field(default=1, description="SLA window for HIGH risk items")

    max_bounces: int = Field(
        default=3,
        description="Distinct workers tolerated before automated reassignment stops",
    )
    escalation_interval_seconds: float = Field(
        default=300, description="Cadence of the SLA breach scan"
    )
    collection_failure_alert_threshold: int = Field(
        default=2, description="Failed collection attempts before operators are alerted"
    )

    # Lab-domain SLAs, in hours
    collection_grace_hours: float = Field(
        default=1,
        description="How long after the booked slot starts the phlebotomist may still be pending",
    )
    slot_timezone: str = Field(default="Asia/Kolkata", description="Zone booked slots are in")
    reschedule_cutoff_hours: float = Field(
        default=4, description="No rescheduling closer than this to the booked slot"
    )
    booking_first_reminder_hours: float = Field(default=72)
    booking_second_reminder_hours: float = Field(default=168)
    booking_expiry_hours: float = Field(default=336)
    phlebotomist_assignment_hours: float = Field(default=2)
    lab_receipt_hours: float = Field(default=4)
    lab_results_standard_hours: float = Field(default=48)
    lab_results_escalation_hours: float = Field(default=72)
    doctor_review_reminder_hours: float = Field(default=24)
    doctor_review_escalation_hours: float = Field(default=48)
    critical_ack_hours: float = Field(default=1)

    operator_ids: list[str] = Field(
        default_factory=list, description="Recipients of operator/admin alerts"
    )

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Serialize log records as JSON")

    def sla_window(self, tier: RiskTier) -> timedelta:
        hours = {
            RiskTier.LOW: self.sla_hours_low,
            RiskTier.MEDIUM: self.sla_hours_medium,
            RiskTier.HIGH: self.sla_hours_high,
        }.get(tier, self.sla_hours_low)
        return timedelta(hours=hours)

    @property
    def slot_tz(self) -> ZoneInfo:
        return ZoneInfo(self.slot_timezone)


@lru_cache
def get_settings() -> Settings:
    return Settings()
