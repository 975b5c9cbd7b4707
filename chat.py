"""Conversational control of a stream through its chat.

A user's chat line is published like any other message, then answered by the
stream's agent. Intents are keyword based and checked in this order:

    pause:     "pause" / "stop"                 -> TaskScheduler.deactivate
    resume:    "resume" / "start"               -> TaskScheduler.activate
    schedule:  daily, weekly, bi-weekly, monthly -> TaskScheduler.update_schedule,
               then a manual run so the first update arrives right away
    topic:     "track", "monitor", "research", ... -> stream retitled, schedule asked for
    general:   anything else gets a prompt to name a topic

Replies are agent ChatPayloads published through the DeliveryBroker, so they
are sequenced and replayable with the rest of the stream.
"""

import logging
import re
from enum import Enum
from typing import Awaitable, Callable

from delivery import DeliveryBroker
from errors import ConcurrencyConflict
from models.messages import ChatPayload, Message
from models.stream import Frequency, ScheduleSpec, Stream, Weekday
from scheduler import TaskScheduler

logger = logging.getLogger(__name__)

WELCOME = (
    "Hello! I'm your Updates Agent. I can keep you informed on any topic through automated "
    "research and scheduled updates. What would you like me to follow, and how often should I update you?"
)

SCHEDULE_QUESTION = "How often would you like updates: daily, weekly, bi-weekly or monthly?"

_PAUSE = re.compile(r"\b(pause|stop)\b")
_RESUME = re.compile(r"\b(resume|start)\b")
_FREQUENCY = re.compile(r"\b(daily|bi-?weekly|weekly|monthly)\b")
_WEEKDAY = re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b")
_TIME = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")

_TOPIC_HINTS = (
    "want to", "research", "track", "monitor", "follow", "stay updated",
    "keep me informed", "learn about", "watch for", "news about",
    "developments in", "breakthroughs", "advances",
)
_TOPIC_LEAD = re.compile(r"^(i want to|please|can you|help me|i'd like to)\s*", re.IGNORECASE)
_TOPIC_VERB = re.compile(r"(track|monitor|research|follow|stay updated on|learn about)\s*", re.IGNORECASE)
MAX_TOPIC_LENGTH = 100


class ChatIntent(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    SCHEDULE = "schedule"
    TOPIC = "topic"
    GENERAL = "general"


def detect_intent(content: str) -> ChatIntent:
    text = content.lower()
    if _PAUSE.search(text):
        return ChatIntent.PAUSE
    if _RESUME.search(text):
        return ChatIntent.RESUME
    if _FREQUENCY.search(text):
        return ChatIntent.SCHEDULE
    if any(hint in text for hint in _TOPIC_HINTS):
        return ChatIntent.TOPIC
    return ChatIntent.GENERAL


def parse_schedule(content: str, current: ScheduleSpec | None = None) -> ScheduleSpec | None:
    """Read a schedule out of a chat line.

    Weekly and bi-weekly default to Monday. Time and timezone fall back to
    the stream's current schedule, then 09:00 UTC.

    Returns:
        ScheduleSpec, or None if no frequency is mentioned
    """
    text = content.lower()
    match = _FREQUENCY.search(text)
    if match is None:
        return None
    word = match.group(1)
    frequency = Frequency.BIWEEKLY if word.startswith("bi") else Frequency(word)

    day_of_week = None
    if frequency in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        weekday = _WEEKDAY.search(text)
        day_of_week = Weekday(weekday.group(1)) if weekday else Weekday.MONDAY

    time_match = _TIME.search(text)
    if time_match:
        time = f"{int(time_match.group(1)):02d}:{time_match.group(2)}"
    else:
        time = current.time if current else "09:00"

    return ScheduleSpec(
        frequency=frequency,
        day_of_week=day_of_week,
        time=time,
        timezone=current.timezone if current else "UTC",
    )


def extract_topic(content: str) -> str:
    """Strip request phrasing ("I want to track ...") down to the topic."""
    topic = _TOPIC_LEAD.sub("", content.strip(), count=1)
    topic = _TOPIC_VERB.sub("", topic, count=1)
    return topic.strip().rstrip(".!?").strip()[:MAX_TOPIC_LENGTH]


class ChatAgent:
    """Answers chat lines on behalf of a stream and applies what they ask for."""

    def __init__(self, scheduler: TaskScheduler, broker: DeliveryBroker):
        self.scheduler = scheduler
        self.broker = broker
        self._handlers: dict[ChatIntent, Callable[[Stream, str], Awaitable[str]]] = {
            ChatIntent.PAUSE: self._on_pause,
            ChatIntent.RESUME: self._on_resume,
            ChatIntent.SCHEDULE: self._on_schedule,
            ChatIntent.TOPIC: self._on_topic,
            ChatIntent.GENERAL: self._on_general,
        }

    def say(self, stream_id: str, content: str) -> Message:
        return self.broker.publish(stream_id, ChatPayload(role="agent", content=content))

    def welcome(self, stream: Stream) -> Message:
        return self.say(stream.id, WELCOME)

    async def handle(self, stream_id: str, content: str, owner: str | None = None) -> list[Message]:
        """Publish the user's line, act on its intent and publish the reply.

        Returns:
            [user message, agent reply]

        Raises:
            NotFound: Unknown stream (or owned by someone else)
        """
        stream = self.scheduler.owned_stream(stream_id, owner)
        user_message = self.broker.publish(stream.id, ChatPayload(role="user", content=content))
        intent = detect_intent(content)
        logger.info("Chat message | stream=%s intent=%s", stream.id, intent.value)
        reply = await self._handlers[intent](stream, content)
        return [user_message, self.say(stream.id, reply)]

    def _stream_updated(self, stream: Stream) -> None:
        self.broker.broadcast(stream.owner, "stream-updated", stream.to_wire())

    async def _on_pause(self, stream: Stream, content: str) -> str:
        stream = self.scheduler.deactivate(stream.id)
        self._stream_updated(stream)
        return "I've paused your automated updates. You can resume them anytime by saying \"resume updates\"."

    async def _on_resume(self, stream: Stream, content: str) -> str:
        if stream.schedule is None:
            return f"There is no schedule to resume yet. {SCHEDULE_QUESTION}"
        stream = self.scheduler.activate(stream.id)
        self._stream_updated(stream)
        return "I've resumed your automated updates. I'll keep delivering them on schedule."

    async def _on_schedule(self, stream: Stream, content: str) -> str:
        spec = parse_schedule(content, stream.schedule)
        stream = self.scheduler.update_schedule(stream.id, spec)
        self._stream_updated(stream)
        try:
            await self.scheduler.manual_trigger(stream.id)
            first = "I'll start researching now and deliver your first update shortly."
        except ConcurrencyConflict:
            first = "A run is already in progress, so your first update is on its way."
        return f"Perfect! I've set up automated {spec.frequency.value} updates for \"{stream.title}\". {first}"

    async def _on_topic(self, stream: Stream, content: str) -> str:
        topic = extract_topic(content)
        if not topic:
            return await self._on_general(stream, content)
        stream = self.scheduler.update_topic(stream.id, topic, content)
        self._stream_updated(stream)
        return (
            f"Great! I'll help you stay updated on \"{topic}\". {SCHEDULE_QUESTION} "
            "Daily suits fast-moving news, weekly most topics, bi-weekly slower subjects "
            "and monthly long-term trends."
        )

    async def _on_general(self, stream: Stream, content: str) -> str:
        return "Tell me what you'd like to track or monitor, and I'll set up automated updates for you."
