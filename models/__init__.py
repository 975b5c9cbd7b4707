"""Pydantic models for the stream scheduling and delivery core.

Stream, ScheduleSpec, NewsConfig, ResearchConfig:
    The recurring subscription and its schedule / focus policy.

PipelineExecution, Stage, ExecutionStatus, ExecutionOutcome:
    One pipeline run and its forward-only stage state machine.

Source, Newsletter, NewsletterDraft, AlertCandidate, NewsAlert, AlertType:
    Pipeline inputs and artifacts.

Message and payloads:
    Durable delivery envelope with a tagged payload union.

Example:
    >>> from models import ScheduleSpec, Frequency
    >>> spec = ScheduleSpec(frequency=Frequency.WEEKLY, day_of_week="monday", time="09:00")
"""

from models.stream import FocusType, Frequency, NewsConfig, ResearchConfig, ScheduleSpec, Stream, Weekday
from models.execution import ExecutionOutcome, ExecutionStatus, InvalidTransition, PipelineExecution, Stage
from models.artifacts import (
    AlertCandidate,
    AlertType,
    NewsAlert,
    Newsletter,
    NewsletterDraft,
    Source,
    alert_type_for,
)
from models.messages import (
    AlertPayload,
    ChatPayload,
    Message,
    NewsletterPayload,
    NoticePayload,
    Payload,
    ProgressPayload,
    SchedulePayload,
)

__all__ = [
    "FocusType",
    "Frequency",
    "NewsConfig",
    "ResearchConfig",
    "ScheduleSpec",
    "Stream",
    "Weekday",
    "ExecutionOutcome",
    "ExecutionStatus",
    "InvalidTransition",
    "PipelineExecution",
    "Stage",
    "AlertCandidate",
    "AlertType",
    "NewsAlert",
    "Newsletter",
    "NewsletterDraft",
    "Source",
    "alert_type_for",
    "AlertPayload",
    "ChatPayload",
    "Message",
    "NewsletterPayload",
    "NoticePayload",
    "Payload",
    "ProgressPayload",
    "SchedulePayload",
]
