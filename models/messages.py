"""Delivered message envelope and its typed payloads.

Every artifact or event pushed to clients travels as a Message: a durable
envelope with a stream-scoped, strictly increasing sequence number. The
payload is a tagged union selected by its `kind` field, so each message kind
carries its own typed fields instead of a free-form metadata bag.

Payload kinds:
    chat:       user or agent chat text
    progress:   pipeline stage progress for an execution
    newsletter: a finished research newsletter
    alert:      an admitted news alert
    schedule:   schedule confirmation after an update
    notice:     scheduler notices (e.g. auto-pause after repeated failures)
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from models.artifacts import NewsAlert, Newsletter
from models.stream import ScheduleSpec


class ChatPayload(BaseModel):
    kind: Literal["chat"] = "chat"
    role: Literal["user", "agent"] = "agent"
    content: str

    def wire_type(self) -> str:
        return self.role

    def text(self) -> str:
        return self.content


class ProgressPayload(BaseModel):
    kind: Literal["progress"] = "progress"
    execution_id: str
    stage: str
    sources_found: int = 0
    insights_found: int = 0
    is_automated: bool = True

    def wire_type(self) -> str:
        return "research_update"

    def text(self) -> str:
        return f"{self.stage}: {self.sources_found} sources, {self.insights_found} insights"

    def metadata(self) -> dict:
        return {
            "executionId": self.execution_id,
            "researchPhase": self.stage,
            "sourcesFound": self.sources_found,
            "insightsFound": self.insights_found,
            "isAutomated": self.is_automated,
        }


class NewsletterPayload(BaseModel):
    kind: Literal["newsletter"] = "newsletter"
    newsletter: Newsletter

    def wire_type(self) -> str:
        return "newsletter"

    def text(self) -> str:
        return self.newsletter.summary

    def metadata(self) -> dict:
        return {
            "confidence": self.newsletter.confidence,
            "sources": self.newsletter.sources,
            "isAutomated": self.newsletter.is_automated,
        }


class AlertPayload(BaseModel):
    kind: Literal["alert"] = "alert"
    alert: NewsAlert

    def wire_type(self) -> str:
        return "alert"

    def text(self) -> str:
        return self.alert.title

    def metadata(self) -> dict:
        return {"alert": self.alert.to_wire()}


class SchedulePayload(BaseModel):
    kind: Literal["schedule"] = "schedule"
    schedule: ScheduleSpec
    next_run: datetime | None = None

    def wire_type(self) -> str:
        return "schedule_confirmation"

    def text(self) -> str:
        spec = self.schedule
        when = f" on {spec.day_of_week.value}" if spec.day_of_week else ""
        return f"Updates scheduled {spec.frequency.value}{when} at {spec.time} ({spec.timezone})."

    def metadata(self) -> dict:
        schedule = self.schedule.to_wire()
        if self.next_run:
            schedule["nextUpdate"] = self.next_run.isoformat()
        return {"schedule": schedule}


class NoticePayload(BaseModel):
    kind: Literal["notice"] = "notice"
    level: Literal["info", "warning", "error"] = "info"
    content: str

    def wire_type(self) -> str:
        return "notice"

    def text(self) -> str:
        return self.content

    def metadata(self) -> dict:
        return {"level": self.level}


Payload = Annotated[
    Union[ChatPayload, ProgressPayload, NewsletterPayload, AlertPayload, SchedulePayload, NoticePayload],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter[Payload] = TypeAdapter(Payload)


class Message(BaseModel):
    """Durable delivery envelope.

    Attributes:
        id: Message id
        stream_id: Stream the message belongs to
        seq: Per-stream sequence number (starts at 1, strictly increasing)
        timestamp: When the message was published (UTC)
        payload: Typed payload selected by `kind`
    """

    id: str
    stream_id: str
    seq: int = Field(ge=1)
    timestamp: datetime
    payload: Payload

    @property
    def kind(self) -> str:
        return self.payload.kind

    def to_wire(self) -> dict:
        """Render as the 'message' event body."""
        data = {
            "id": self.id,
            "seq": self.seq,
            "type": self.payload.wire_type(),
            "content": self.payload.text(),
            "timestamp": self.timestamp.isoformat(),
            "streamId": self.stream_id,
        }
        if isinstance(self.payload, NewsletterPayload):
            data["newsletter"] = self.payload.newsletter.to_wire()
        metadata = getattr(self.payload, "metadata", None)
        if metadata is not None:
            data["metadata"] = metadata()
        return data
