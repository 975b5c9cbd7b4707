"""Tests for chat intents and the stream agent's replies."""

import asyncio

import pytest

from chat import SCHEDULE_QUESTION, WELCOME, ChatAgent, ChatIntent, detect_intent, extract_topic, parse_schedule
from errors import NotFound
from models.stream import Frequency, ScheduleSpec, Weekday


@pytest.fixture
def agent(scheduler, broker):
    return ChatAgent(scheduler, broker)


def say(agent, stream_id, content, owner=None):
    return asyncio.run(agent.handle(stream_id, content, owner=owner))


class TestDetectIntent:
    """Tests for keyword intent detection."""

    @pytest.mark.parametrize("content,intent", [
        ("Please pause updates", ChatIntent.PAUSE),
        ("stop for now", ChatIntent.PAUSE),
        ("Resume updates", ChatIntent.RESUME),
        ("start again", ChatIntent.RESUME),
        ("Weekly works for me", ChatIntent.SCHEDULE),
        ("bi-weekly please", ChatIntent.SCHEDULE),
        ("I want to track fusion energy startups", ChatIntent.TOPIC),
        ("news about the housing market", ChatIntent.TOPIC),
        ("hello there", ChatIntent.GENERAL),
    ])
    def test_intents(self, content, intent):
        assert detect_intent(content) is intent

    def test_words_not_substrings(self):
        # "startups" is not "start"
        assert detect_intent("follow robotics startups") is ChatIntent.TOPIC


class TestParseSchedule:
    """Tests for reading a schedule out of a chat line."""

    def test_biweekly_with_day_and_time(self):
        spec = parse_schedule("Bi-weekly on Friday at 7:30 please")
        assert spec.frequency is Frequency.BIWEEKLY
        assert spec.day_of_week is Weekday.FRIDAY
        assert spec.time == "07:30"

    def test_biweekly_without_hyphen(self):
        assert parse_schedule("biweekly").frequency is Frequency.BIWEEKLY

    def test_weekly_defaults_to_monday(self):
        spec = parse_schedule("weekly")
        assert spec.day_of_week is Weekday.MONDAY
        assert spec.time == "09:00"

    def test_keeps_current_time_and_timezone(self):
        current = ScheduleSpec(frequency="daily", time="18:15", timezone="Europe/Berlin")
        spec = parse_schedule("monthly is enough", current)
        assert spec.frequency is Frequency.MONTHLY
        assert spec.day_of_week is None
        assert (spec.time, spec.timezone) == ("18:15", "Europe/Berlin")

    def test_no_frequency(self):
        assert parse_schedule("whenever you like") is None


class TestExtractTopic:
    """Tests for stripping request phrasing from a topic."""

    @pytest.mark.parametrize("content,topic", [
        ("I want to track fusion energy startups", "fusion energy startups"),
        ("Please research solid-state batteries.", "solid-state batteries"),
        ("developments in protein folding", "developments in protein folding"),
    ])
    def test_extract(self, content, topic):
        assert extract_topic(content) == topic

    def test_length_is_capped(self):
        assert len(extract_topic("track " + "x" * 300)) == 100


class TestChatAgent:
    """Tests for ChatAgent.handle and the welcome message."""

    def test_welcome(self, agent, research_stream):
        message = agent.welcome(research_stream)
        assert message.payload.role == "agent"
        assert message.payload.content == WELCOME
        assert message.seq == 1

    def test_pause(self, agent, db, research_stream):
        user, reply = say(agent, research_stream.id, "Please pause updates")
        assert (user.seq, reply.seq) == (1, 2)
        assert user.payload.role == "user"
        assert reply.payload.role == "agent"
        assert "paused" in reply.payload.content
        assert db.get_stream(research_stream.id).is_active is False

    def test_resume(self, agent, db, scheduler, research_stream):
        scheduler.deactivate(research_stream.id)
        _, reply = say(agent, research_stream.id, "resume updates")
        stream = db.get_stream(research_stream.id)
        assert stream.is_active
        assert stream.next_run is not None
        assert "resumed" in reply.payload.content

    def test_resume_without_schedule_asks_for_one(self, agent, db, scheduler):
        stream = scheduler.create_stream(owner="alice", title="deep sea mining")
        _, reply = say(agent, stream.id, "start please")
        assert SCHEDULE_QUESTION in reply.payload.content
        assert db.get_stream(stream.id).is_active is False

    def test_schedule_updates_and_starts_research(self, agent, db, broker, research_stream):
        user, reply = say(agent, research_stream.id, "Daily updates would be great")

        stream = db.get_stream(research_stream.id)
        assert stream.schedule.frequency is Frequency.DAILY
        assert stream.is_active
        assert [m.kind for m in broker.replay_since(research_stream.id, 0)] == ["chat", "schedule", "chat"]
        assert reply.seq == 3
        assert "daily updates" in reply.payload.content

        [execution] = db.list_executions(research_stream.id)
        assert execution.is_automated is False

    def test_schedule_while_running(self, agent, db, guard, research_stream):
        guard.try_acquire(research_stream.id)
        _, reply = say(agent, research_stream.id, "weekly on friday")
        assert "already in progress" in reply.payload.content
        assert db.get_stream(research_stream.id).schedule.day_of_week is Weekday.FRIDAY
        assert db.list_executions(research_stream.id) == []

    def test_topic_request_retitles_stream(self, agent, db, research_stream):
        content = "I want to track fusion energy startups"
        _, reply = say(agent, research_stream.id, content)
        stream = db.get_stream(research_stream.id)
        assert stream.title == "fusion energy startups"
        assert stream.description == content
        assert stream.next_run == research_stream.next_run
        assert SCHEDULE_QUESTION in reply.payload.content

    def test_general_message(self, agent, db, research_stream):
        _, reply = say(agent, research_stream.id, "hello there")
        assert reply.payload.content.startswith("Tell me what you'd like to track")
        assert db.get_stream(research_stream.id).title == research_stream.title

    def test_other_owner_publishes_nothing(self, agent, broker, research_stream):
        with pytest.raises(NotFound):
            say(agent, research_stream.id, "pause", owner="bob")
        assert broker.replay_since(research_stream.id, 0) == []
