import asyncio

import httpx
import pytest

from services.poll_client import EPOCH_ISO, MessagePollClient

BASE = "http://testserver"


def msg(id_, created_at, content="hi", author_id="bob"):
    return {
        "id": id_,
        "content": content,
        "createdAt": created_at,
        "authorId": author_id,
        "author": {"id": author_id, "name": author_id.title(), "image": None} if author_id else None,
        "chatId": "c1",
        "isSystemMessage": author_id is None,
    }


M1 = msg("m1", "2026-03-01T09:00:01.000000Z")
M2 = msg("m2", "2026-03-01T09:00:02.000000Z")
M3 = msg("m3", "2026-03-01T09:00:03.000000Z", author_id="alice")


def scripted(responses, seen=None):
    """Transport answering poll requests with the given bodies/status codes in order."""
    queue = list(responses)

    def handler(request: httpx.Request):
        if seen is not None:
            seen.append(request)
        item = queue.pop(0) if queue else {"messages": []}
        if isinstance(item, int):
            return httpx.Response(item, json={"error": "boom"})
        if isinstance(item, Exception):
            raise item
        return httpx.Response(200, json=item)

    return httpx.MockTransport(handler)


def test_same_message_from_overlapping_polls_is_kept_once():
    async def scenario():
        delivered = []
        client = MessagePollClient(BASE, "c1", "alice", on_messages=delivered.append,
                                   transport=scripted([{"messages": [M1]}, {"messages": [M1, M2]}]))
        assert await client.poll_once()
        assert await client.poll_once()
        await client.stop()
        return client, delivered

    client, delivered = asyncio.run(scenario())
    assert [m["id"] for m in client.messages] == ["m1", "m2"]
    assert [[m["id"] for m in batch] for batch in delivered] == [["m1"], ["m2"]]


def test_cursor_follows_last_server_message():
    seen = []

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", initial_messages=[M1],
                                   transport=scripted([{"messages": [M2]}, {"messages": []}], seen))
        assert client.cursor == M1["createdAt"]
        await client.poll_once()
        await client.poll_once()
        await client.stop()
        return client

    client = asyncio.run(scenario())
    assert [r.url.params["since"] for r in seen] == [M1["createdAt"], M2["createdAt"]]
    assert seen[0].url.path == "/chats/c1/messages/poll"
    assert seen[0].headers["X-User-Id"] == "alice"
    assert client.cursor == M2["createdAt"]


def test_empty_client_starts_from_epoch():
    client = MessagePollClient(BASE, "c1", "alice", transport=scripted([]))
    assert client.cursor == EPOCH_ISO
    asyncio.run(client.stop())


def test_failures_leave_state_untouched():
    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", initial_messages=[M1],
                                   transport=scripted([500, httpx.ConnectError("refused"), {"messages": [M2]}]))
        results = [await client.poll_once() for _ in range(3)]
        await client.stop()
        return client, results

    client, results = asyncio.run(scenario())
    assert results == [False, False, True]
    assert [m["id"] for m in client.messages] == ["m1", "m2"]


def test_sent_message_is_not_duplicated_by_poll():
    def handler(request: httpx.Request):
        if request.method == "POST":
            return httpx.Response(200, json={"status": "success", "newMessage": M3})
        return httpx.Response(200, json={"messages": [M2, M3]})

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", initial_messages=[M1],
                                   transport=httpx.MockTransport(handler))
        sent = await client.send("hello")
        cursor_after_send = client.cursor
        await client.poll_once()
        await client.stop()
        return client, sent, cursor_after_send

    client, sent, cursor_after_send = asyncio.run(scenario())
    assert sent["id"] == "m3"
    assert cursor_after_send == M1["createdAt"]
    assert [m["id"] for m in client.messages] == ["m1", "m3", "m2"]


def test_loop_keeps_retrying_with_backoff():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        return httpx.Response(503)

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", delay=0, backoff=0.1,
                                   transport=httpx.MockTransport(handler))
        client.start()
        await asyncio.sleep(0.35)
        state = client.state
        await client.stop()
        return state

    state = asyncio.run(scenario())
    assert state == "backoff"
    assert 2 <= len(calls) <= 6


def test_loop_polls_again_after_success():
    seen = []

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", delay=0.01, backoff=10,
                                   transport=scripted([{"messages": [M1]}, {"messages": [M2]}], seen))
        client.start()
        await asyncio.sleep(0.3)
        await client.stop()
        return client

    client = asyncio.run(scenario())
    assert [m["id"] for m in client.messages] == ["m1", "m2"]
    assert len(seen) >= 3


def test_stop_aborts_in_flight_request_and_silences_callbacks():
    delivered = []

    async def slow_handler(request: httpx.Request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"messages": [M1]})

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", on_messages=delivered.append,
                                   transport=httpx.MockTransport(slow_handler))
        client.start()
        await asyncio.sleep(0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await client.stop()
        stopped_in = loop.time() - started
        await asyncio.sleep(0.05)
        return client, stopped_in

    client, stopped_in = asyncio.run(scenario())
    assert stopped_in < 1
    assert client.state == "stopped"
    assert client.messages == []
    assert delivered == []


def test_malformed_bodies_count_as_failures():
    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", initial_messages=[M1],
                                   transport=scripted([
                                       ["not", "an", "object"],
                                       {"messages": "nope"},
                                       {"messages": [{"content": "no id"}]},
                                       {"messages": [M2]},
                                   ]))
        results = [await client.poll_once() for _ in range(4)]
        await client.stop()
        return client, results

    client, results = asyncio.run(scenario())
    assert results == [False, False, False, True]
    assert [m["id"] for m in client.messages] == ["m1", "m2"]
    assert client.cursor == M2["createdAt"]


def test_loop_backs_off_after_malformed_body():
    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", delay=0, backoff=0.01,
                                   transport=scripted([["not", "an", "object"], {"messages": [M1]}]))
        client.start()
        await asyncio.sleep(0.2)
        await client.stop()
        return client

    client = asyncio.run(scenario())
    assert [m["id"] for m in client.messages] == ["m1"]
    assert client._client.is_closed


def test_loop_survives_failing_callback():
    delivered = []

    def on_messages(batch):
        delivered.append([m["id"] for m in batch])
        if len(delivered) == 1:
            raise RuntimeError("render failed")

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", on_messages=on_messages, delay=0, backoff=0.01,
                                   transport=scripted([{"messages": [M1]}, {"messages": [M2]}]))
        client.start()
        await asyncio.sleep(0.2)
        await client.stop()
        return client

    client = asyncio.run(scenario())
    assert delivered == [["m1"], ["m2"]]
    assert [m["id"] for m in client.messages] == ["m1", "m2"]
    assert client.state == "stopped"
    assert client._client.is_closed


def test_cancelled_stop_propagates_and_still_closes():
    async def slow_handler(request: httpx.Request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"messages": [M1]})

    async def scenario():
        client = MessagePollClient(BASE, "c1", "alice", transport=httpx.MockTransport(slow_handler))
        client.start()
        await asyncio.sleep(0.05)
        stopper = asyncio.create_task(client.stop())
        await asyncio.sleep(0)
        stopper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await stopper
        return client

    client = asyncio.run(scenario())
    assert client.state == "stopped"
    assert client.messages == []
    assert client._client.is_closed
