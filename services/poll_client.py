# services/poll_client.py
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional
import httpx
from config import POLL_CLIENT_DELAY_SECONDS, POLL_CLIENT_BACKOFF_SECONDS, POLL_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

EPOCH_ISO = "1970-01-01T00:00:00.000000Z"


def _poll_messages(payload) -> List[Dict]:
    """The message list of a poll response. Raises ValueError on a malformed body."""
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected poll body {type(payload).__name__}")
    messages = payload.get("messages") or []
    if not isinstance(messages, list):
        raise ValueError("messages is not a list")
    for message in messages:
        if not isinstance(message, dict) or "id" not in message or "createdAt" not in message:
            raise ValueError("message without id or createdAt")
    return messages


class MessagePollClient:
    """
    Keeps a local, id-deduplicated copy of one chat's messages up to date by
    long-polling the server.

    The loop has two states: after a successful round trip it waits `delay`
    and polls again, after a failed one it waits `backoff`. It never gives up;
    only stop() ends it. At most one request is in flight at any time.

    The cursor sent to the server is the timestamp of the last message that
    arrived from the server (initial history or a poll). Messages merged from
    send() do not move it, so a message from the other side that was stored
    just before ours is still fetched; ours then comes back too and is dropped
    by the id check.
    """

    def __init__(
        self,
        base_url: str,
        chat_id: str,
        user_id: str,
        initial_messages: Optional[Iterable[Dict]] = None,
        on_messages: Optional[Callable[[List[Dict]], None]] = None,
        delay: Optional[float] = None,
        backoff: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chat_id = chat_id
        self.on_messages = on_messages
        self.delay = POLL_CLIENT_DELAY_SECONDS if delay is None else delay
        self.backoff = POLL_CLIENT_BACKOFF_SECONDS if backoff is None else backoff
        self.messages: List[Dict] = []
        self.state = "idle"
        self._ids = set()
        self._cursor = EPOCH_ISO
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        # The read timeout has to outlast the server's wait budget
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-User-Id": user_id},
            timeout=httpx.Timeout(10.0, read=POLL_TIMEOUT_SECONDS + 10.0),
            transport=transport,
        )
        if initial_messages:
            self._merge_from_server(list(initial_messages), notify=False)

    @property
    def cursor(self) -> str:
        return self._cursor

    def merge(self, messages: Iterable[Dict], notify: bool = True) -> List[Dict]:
        """Append messages whose id is not held yet, in the given order. Returns the appended ones."""
        added = []
        for message in messages:
            if message["id"] in self._ids:
                continue
            self._ids.add(message["id"])
            self.messages.append(message)
            added.append(message)
        if added and notify and self.on_messages:
            self.on_messages(added)
        return added

    def _merge_from_server(self, messages: List[Dict], notify: bool = True) -> List[Dict]:
        if messages:
            self._cursor = messages[-1]["createdAt"]
        return self.merge(messages, notify=notify)

    async def poll_once(self) -> bool:
        """One long-poll round trip. Returns False on any network or server failure."""
        try:
            response = await self._client.get(
                f"/chats/{self.chat_id}/messages/poll",
                params={"since": self._cursor},
            )
            response.raise_for_status()
            messages = _poll_messages(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Polling chat {self.chat_id} failed: {e}")
            return False

        if self._stopped:
            return False
        self._merge_from_server(messages)
        return True

    async def _run(self):
        while not self._stopped:
            self.state = "polling"
            try:
                ok = await self.poll_once()
            except Exception as e:
                logger.error(f"Poll loop error in chat {self.chat_id}: {e}")
                ok = False
            if self._stopped:
                break
            self.state = "polling" if ok else "backoff"
            await asyncio.sleep(self.delay if ok else self.backoff)

    def start(self) -> None:
        """Schedule the poll loop on the running event loop."""
        if self._task is None and not self._stopped:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop and any in-flight request. No state changes afterwards."""
        self._stopped = True
        self.state = "stopped"
        try:
            if self._task is not None:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    # stop() itself is being cancelled
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
                self._task = None
        finally:
            await self._client.aclose()

    async def send(self, content: str) -> Dict:
        """
        Send a message and merge the confirmed copy right away.
        Raises httpx.HTTPStatusError when the server rejects it.
        """
        response = await self._client.post(
            f"/chats/{self.chat_id}/messages",
            json={"content": content},
        )
        response.raise_for_status()
        message = response.json()["newMessage"]
        if not self._stopped:
            self.merge([message])
        return message

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
