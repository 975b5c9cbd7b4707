"""Tests for the WebSocket event protocol and HTTP API."""

import asyncio

import pytest
from aiohttp import test_utils

from auth import StaticTokenAuthenticator
from errors import AuthenticationFailure
from server import RelayServer


@pytest.fixture
def server(db, scheduler, broker, alert_filter, config):
    return RelayServer(db, scheduler, broker, alert_filter, StaticTokenAuthenticator(config.auth_tokens))


def run_client(server, scenario):
    """Run `scenario(client)` against a live test server."""

    async def main():
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            return await scenario(client)

    return asyncio.run(main())


async def send(ws, event, data=None):
    await ws.send_json({"event": event, "data": data or {}})
    return await ws.receive_json(timeout=2)


async def login(client, token="secret-token"):
    ws = await client.ws_connect("/ws")
    reply = await send(ws, "authenticate", {"token": token})
    return ws, reply


class TestAuthentication:
    """Tests for the authenticate event."""

    def test_requires_authentication(self, server):
        async def scenario(client):
            ws = await client.ws_connect("/ws")
            reply = await send(ws, "create-stream", {"title": "x"})
            await ws.close()
            return reply

        assert run_client(server, scenario) == {"event": "auth-error", "data": {"message": "Not authenticated"}}

    def test_rejects_bad_token(self, server):
        async def scenario(client):
            ws, reply = await login(client, token="wrong")
            await ws.close()
            return reply

        reply = run_client(server, scenario)
        assert reply["event"] == "auth-error"
        assert reply["data"]["message"] == "Invalid authentication token"

    def test_lists_streams_on_login(self, server, research_stream):
        async def scenario(client):
            ws, reply = await login(client)
            await ws.close()
            return reply

        reply = run_client(server, scenario)
        assert reply["event"] == "streams-updated"
        assert [s["id"] for s in reply["data"]] == [research_stream.id]


class TestEvents:
    """Tests for authenticated client events."""

    def test_create_stream(self, server, db):
        async def scenario(client):
            ws, _ = await login(client)
            reply = await send(ws, "create-stream", {
                "title": "Solid-state batteries",
                "focusType": "news",
                "schedule": {"frequency": "weekly", "dayOfWeek": "friday", "time": "08:00"},
                "newsConfig": {"alertThreshold": 7},
            })
            welcome = await ws.receive_json(timeout=2)
            await ws.close()
            return reply, welcome

        reply, welcome = run_client(server, scenario)
        assert reply["event"] == "stream-created"
        assert welcome["data"]["type"] == "agent"
        assert welcome["data"]["streamId"] == reply["data"]["id"]
        assert welcome["data"]["content"].startswith("Hello!")
        assert reply["data"]["focusType"] == "news"
        assert reply["data"]["isActive"] is True
        assert reply["data"]["schedule"]["dayOfWeek"] == "friday"
        stored = db.get_stream(reply["data"]["id"])
        assert stored.owner == "alice"
        assert stored.news_config.alert_threshold == 7

    def test_invalid_schedule_is_an_error(self, server):
        async def scenario(client):
            ws, _ = await login(client)
            reply = await send(ws, "create-stream", {"title": "x", "schedule": {"frequency": "weekly"}})
            follow_up = await send(ws, "switch-focus", {"focusType": "news"})
            await ws.close()
            return reply, follow_up

        reply, follow_up = run_client(server, scenario)
        assert reply["event"] == "error"
        assert "day_of_week is required" in reply["data"]["message"]
        assert follow_up["event"] == "focus-switched"

    def test_malformed_and_unknown(self, server):
        async def scenario(client):
            ws, _ = await login(client)
            await ws.send_str("not json")
            malformed = await ws.receive_json(timeout=2)
            unknown = await send(ws, "self-destruct")
            await ws.close()
            return malformed, unknown

        malformed, unknown = run_client(server, scenario)
        assert malformed["data"]["message"] == "Malformed frame"
        assert unknown["data"]["message"] == "Unknown event: self-destruct"

    def test_send_message_is_answered(self, server, research_stream):
        async def scenario(client):
            ws, _ = await login(client)
            pushed = await send(ws, "send-message", {"streamId": research_stream.id, "content": "hello"})
            answer = await ws.receive_json(timeout=2)
            await ws.close()
            return pushed, answer

        pushed, answer = run_client(server, scenario)
        assert pushed["event"] == "message"
        assert pushed["data"]["seq"] == 1
        assert pushed["data"]["type"] == "user"
        assert pushed["data"]["content"] == "hello"
        assert answer["event"] == "message"
        assert answer["data"]["seq"] == 2
        assert answer["data"]["type"] == "agent"

    def test_pause_by_chat(self, server, db, research_stream):
        async def scenario(client):
            ws, _ = await login(client)
            frames = [await send(ws, "send-message", {"streamId": research_stream.id, "content": "pause please"})]
            frames += [await ws.receive_json(timeout=2) for _ in range(2)]
            await ws.close()
            return frames

        user, updated, answer = run_client(server, scenario)
        assert user["data"]["type"] == "user"
        assert updated["event"] == "stream-updated"
        assert updated["data"]["isActive"] is False
        assert answer["data"]["type"] == "agent"
        assert db.get_stream(research_stream.id).is_active is False

    def test_update_schedule(self, server, research_stream):
        async def scenario(client):
            ws, _ = await login(client)
            pushed = await send(ws, "update-schedule", {
                "streamId": research_stream.id,
                "schedule": {"frequency": "daily", "time": "18:00"},
            })
            reply = await ws.receive_json(timeout=2)
            await ws.close()
            return pushed, reply

        pushed, reply = run_client(server, scenario)
        assert pushed["data"]["type"] == "schedule_confirmation"
        assert reply["event"] == "schedule-updated"
        assert reply["data"]["schedule"]["nextUpdate"] == "2024-01-15T18:00:00+00:00"

    def test_trigger_then_conflict(self, server, research_stream):
        async def scenario(client):
            ws, _ = await login(client)
            first = await send(ws, "trigger-research", {"streamId": research_stream.id})
            second = await send(ws, "trigger-research", {"streamId": research_stream.id})
            await ws.close()
            return first, second

        first, second = run_client(server, scenario)
        assert first["event"] == "research-triggered"
        assert first["data"]["streamId"] == research_stream.id
        assert second == {"event": "error", "data": {"message": f"already running: {research_stream.id}"}}

    def test_other_owner_cannot_trigger(self, server, research_stream):
        async def scenario(client):
            ws, _ = await login(client, token="other-token")
            reply = await send(ws, "trigger-research", {"streamId": research_stream.id})
            await ws.close()
            return reply

        reply = run_client(server, scenario)
        assert reply["data"]["message"] == f"stream not found: {research_stream.id}"

    def test_switch_focus(self, server, research_stream, news_stream):
        async def scenario(client):
            ws, _ = await login(client)
            reply = await send(ws, "switch-focus", {"focusType": "news"})
            bad = await send(ws, "switch-focus", {"focusType": "sports"})
            await ws.close()
            return reply, bad

        reply, bad = run_client(server, scenario)
        assert reply["data"]["focusType"] == "news"
        assert [s["id"] for s in reply["data"]["streams"]] == [news_stream.id]
        assert bad["event"] == "error"

    def test_mark_unknown_alert(self, server):
        async def scenario(client):
            ws, _ = await login(client)
            reply = await send(ws, "mark-alert-read", {"alertId": "nope"})
            await ws.close()
            return reply

        assert run_client(server, scenario)["data"]["message"] == "alert not found: nope"

    def test_pause_stream(self, server, research_stream):
        async def scenario(client):
            ws, _ = await login(client)
            reply = await send(ws, "pause-stream", {"streamId": research_stream.id})
            await ws.close()
            return reply

        reply = run_client(server, scenario)
        assert reply["event"] == "stream-updated"
        assert reply["data"]["isActive"] is False
        assert reply["data"]["nextUpdate"] is None

    def test_replay(self, server, broker, research_stream):
        from models.messages import ChatPayload

        for i in range(3):
            broker.publish(research_stream.id, ChatPayload(content=f"m{i + 1}"))

        async def scenario(client):
            ws, _ = await login(client)
            await ws.send_json({"event": "replay", "data": {"streamId": research_stream.id, "since": 1}})
            replayed = [await ws.receive_json(timeout=2) for _ in range(2)]
            await ws.close()
            return replayed

        replayed = run_client(server, scenario)
        assert [m["data"]["seq"] for m in replayed] == [2, 3]


class TestHttp:
    """Tests for the HTTP endpoints."""

    def test_health(self, server):
        async def scenario(client):
            resp = await client.get("/api/health")
            return resp.status, await resp.json()

        status, body = run_client(server, scenario)
        assert status == 200
        assert body["status"] == "ok"
        assert body["store"]["streams"] == 0

    def test_messages_requires_token(self, server, research_stream):
        async def scenario(client):
            resp = await client.get(f"/api/streams/{research_stream.id}/messages")
            return resp.status

        assert run_client(server, scenario) == 401

    def test_messages_since(self, server, broker, research_stream):
        from models.messages import ChatPayload

        for i in range(4):
            broker.publish(research_stream.id, ChatPayload(content=str(i)))

        async def scenario(client):
            headers = {"Authorization": "Bearer secret-token"}
            ok = await client.get(f"/api/streams/{research_stream.id}/messages?since=2", headers=headers)
            other = await client.get(
                f"/api/streams/{research_stream.id}/messages", headers={"Authorization": "Bearer other-token"}
            )
            return await ok.json(), other.status

        body, other_status = run_client(server, scenario)
        assert [m["seq"] for m in body["messages"]] == [3, 4]
        assert other_status == 404


class TestStaticTokenAuthenticator:
    """Tests for token lookup."""

    def test_bearer_prefix(self):
        auth = StaticTokenAuthenticator({"abc": "alice"})
        assert auth.authenticate("Bearer abc") == "alice"
        assert auth.authenticate("abc") == "alice"

    @pytest.mark.parametrize("token", ["", "nope", "Bearer "])
    def test_rejects(self, token):
        with pytest.raises(AuthenticationFailure):
            StaticTokenAuthenticator({"abc": "alice"}).authenticate(token)
