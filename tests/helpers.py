"""
Test doubles shared by the watcher, lifecycle and API tests
"""
import asyncio
from collections import defaultdict
from email.message import EmailMessage
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

from app.exceptions import MailboxCommandError
from app.inbox_watcher import InboxWatcher

ALLOWED_SENDER = "boss@example.com"
GENERATED_REPLY = "Yes, the meeting is confirmed for 3pm."


def make_raw_email(
    sender: str,
    subject: str,
    body: str,
    message_id: Optional[str] = "<msg-1@example.com>",
    html: Optional[str] = None
) -> bytes:
    """Build RFC822 bytes the way a mail server would return them"""
    message = EmailMessage()
    message["From"] = sender
    message["To"] = "assistant@example.com"
    message["Subject"] = subject
    if message_id:
        message["Message-ID"] = message_id
    message.set_content(body)
    if html:
        message.add_alternative(html, subtype="html")
    return message.as_bytes()


class FakeMailbox:
    """In-memory stand-in for IMAPClient"""

    def __init__(
        self,
        messages: Dict[str, bytes],
        seen: Dict[str, int],
        fail_connect: bool = False,
        fail_search: bool = False,
        fail_fetch: bool = False
    ):
        self.messages = messages
        self.seen = seen
        self.fail_connect = fail_connect
        self.fail_search = fail_search
        self.fail_fetch = fail_fetch
        self.connected = False
        self.search_calls = 0
        self.fetch_calls: List[List[str]] = []
        self.disconnect_calls = 0
        self.pushes: asyncio.Queue = asyncio.Queue()

    @property
    def is_ready(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    async def search_unseen(self) -> List[str]:
        self.search_calls += 1
        if self.fail_search:
            raise MailboxCommandError("SEARCH", "NO", "search failed")
        return [uid for uid in self.messages if self.seen[uid] == 0]

    async def fetch(self, message_ids):
        self.fetch_calls.append(list(message_ids))
        if self.fail_fetch:
            raise MailboxCommandError("FETCH", "BAD", "fetch failed")
        fetched = []
        for uid in message_ids:
            self.seen[uid] += 1
            fetched.append((uid, self.messages[uid]))
        return fetched

    async def wait_for_new_mail(self) -> Optional[int]:
        item = await self.pushes.get()
        if isinstance(item, Exception):
            self.connected = False
            raise item
        return item

    def announce(self, uid: str, raw: bytes) -> None:
        """Deliver a new message and push an EXISTS notification"""
        self.messages[uid] = raw
        self.pushes.put_nowait(len(self.messages))

    def drop(self) -> None:
        """Simulate the server closing the connection"""
        self.pushes.put_nowait(ConnectionResetError("connection closed by server"))


class FakeMailboxFactory:
    """Hands out FakeMailbox instances sharing one message store"""

    def __init__(
        self,
        messages: Optional[Dict[str, bytes]] = None,
        fail_first: int = 0,
        always_fail: bool = False,
        **mailbox_options
    ):
        self.messages = dict(messages or {})
        self.seen: Dict[str, int] = defaultdict(int)
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.mailbox_options = mailbox_options
        self.created: List[FakeMailbox] = []

    def __call__(self) -> FakeMailbox:
        fail = self.always_fail or len(self.created) < self.fail_first
        mailbox = FakeMailbox(self.messages, self.seen, fail_connect=fail, **self.mailbox_options)
        self.created.append(mailbox)
        return mailbox

    @property
    def attempts(self) -> int:
        return len(self.created)

    @property
    def current(self) -> FakeMailbox:
        return self.created[-1]


class ExitRecorder:
    """Replaces sys.exit so the reconnect cap can be observed"""

    def __init__(self):
        self.codes: List[int] = []
        self.called = asyncio.Event()

    def __call__(self, code: int) -> None:
        self.codes.append(code)
        self.called.set()


def make_reply_generator(reply: str = GENERATED_REPLY) -> MagicMock:
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=reply)
    return generator


def make_transport() -> MagicMock:
    transport = MagicMock()
    transport.send = AsyncMock(return_value=None)
    return transport


def make_watcher(factory: FakeMailboxFactory, **overrides) -> InboxWatcher:
    options = dict(
        mailbox_factory=factory,
        reply_generator=make_reply_generator(),
        mail_transport=make_transport(),
        allowed_sender=ALLOWED_SENDER,
        max_retries=3,
        retry_delay=0.01,
        exit_process=ExitRecorder(),
    )
    options.update(overrides)
    return InboxWatcher(**options)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail the test"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)
