"""
Inbox watcher - keeps the mailbox connection alive and answers the allowed sender

State machine:
    disconnected -> connecting -> ready
    connecting -> error -> (retry_delay) -> connecting, while retry_count < max_retries
    error with retry_count == max_retries -> process exit(1)
    ready -> disconnected -> (retry_delay) -> connecting, always (retry_count not consulted)
"""
import asyncio
import logging
import sys
import time
from typing import Callable, Dict, Iterable, Optional, Set

from .exceptions import MailboxNotConnectedError
from .imap_client import IMAPClient
from .message_parser import parse_message
from .models import ConnectionState, IncomingMessage
from .reply_generator import ReplyGenerator
from .smtp_client import MailTransportClient

logger = logging.getLogger(__name__)


class InboxWatcher:
    """Owns the single mailbox connection and the reply pipeline"""

    def __init__(
        self,
        mailbox_factory: Callable[[], IMAPClient],
        reply_generator: ReplyGenerator,
        mail_transport: MailTransportClient,
        allowed_sender: str,
        case_sensitive: bool = True,
        max_retries: int = 5,
        retry_delay: float = 10.0,
        dedupe_window: float = 300.0,
        exit_process: Callable[[int], None] = sys.exit
    ):
        """
        Initialize the watcher.

        Args:
            mailbox_factory: Returns a fresh, unconnected mailbox client per attempt
            reply_generator: Produces reply text (never raises)
            mail_transport: Sends replies (raises on failure)
            allowed_sender: The only address that gets a reply
            case_sensitive: Compare sender addresses case-sensitively
            max_retries: Consecutive connection errors before the process exits
            retry_delay: Seconds to wait before any reconnect attempt
            dedupe_window: Seconds a dispatched message id is remembered (0 disables)
            exit_process: Called with the exit code once retries are exhausted
        """
        self.mailbox_factory = mailbox_factory
        self.reply_generator = reply_generator
        self.mail_transport = mail_transport
        self.allowed_sender = allowed_sender
        self.case_sensitive = case_sensitive
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.dedupe_window = dedupe_window
        self.exit_process = exit_process

        self._state = ConnectionState.DISCONNECTED
        self._retry_count = 0
        self._mailbox: Optional[IMAPClient] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._scan_lock = asyncio.Lock()
        self._recently_dispatched: Dict[str, float] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_ready(self) -> bool:
        """True when connected and the mailbox reports it is usable"""
        return (
            self._state == ConnectionState.READY
            and self._mailbox is not None
            and self._mailbox.is_ready
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the mailbox and scan it; failures go through the retry policy"""
        self._closed = False
        await self._connect()

    async def close(self) -> None:
        """Stop listening, cancel any pending reconnect and log out"""
        self._closed = True

        current = asyncio.current_task()
        tasks = [
            task for task in (self._reconnect_task, self._listen_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = None
        self._listen_task = None

        mailbox, self._mailbox = self._mailbox, None
        if mailbox is not None:
            await mailbox.disconnect()
        self._state = ConnectionState.DISCONNECTED
        logger.info("Inbox watcher stopped")

    async def _connect(self) -> None:
        if self._state in (ConnectionState.CONNECTING, ConnectionState.READY):
            logger.warning(f"Connect requested while {self._state.value}, ignoring")
            return

        self._state = ConnectionState.CONNECTING
        mailbox = self.mailbox_factory()
        logger.info("Connecting to IMAP server...")

        try:
            await mailbox.connect()
        except Exception as e:
            logger.error(f"IMAP error: {e}")
            self._state = ConnectionState.ERROR
            self._handle_connection_error()
            return

        if self._closed:
            await mailbox.disconnect()
            self._state = ConnectionState.DISCONNECTED
            return

        self._mailbox = mailbox
        self._state = ConnectionState.READY
        self._retry_count = 0
        logger.info("Mailbox ready")

        try:
            await self.scan_unseen()
        except MailboxNotConnectedError as e:
            logger.warning(f"Initial scan skipped: {e}")

        self._listen_task = asyncio.create_task(self._listen(mailbox))

    def _handle_connection_error(self) -> None:
        if self._closed:
            return

        self._retry_count += 1
        if self._retry_count < self.max_retries:
            logger.info(f"Attempting to reconnect ({self._retry_count}/{self.max_retries})...")
            self._schedule_reconnect()
        else:
            logger.error("Maximum retry attempts reached. Exiting...")
            self.exit_process(1)

    async def _listen(self, mailbox: IMAPClient) -> None:
        """Wait for new-mail pushes until the connection ends"""
        try:
            while True:
                count = await mailbox.wait_for_new_mail()
                if count is None:
                    continue
                logger.info(f"New mail event: {count} message(s) in mailbox")
                await self.scan_unseen()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"IMAP connection lost: {e}")

        await self._on_disconnected(mailbox)

    async def _on_disconnected(self, mailbox: IMAPClient) -> None:
        if self._mailbox is mailbox:
            self._mailbox = None
        self._state = ConnectionState.DISCONNECTED
        logger.info("IMAP connection ended")

        if not self._closed:
            self._schedule_reconnect()
        await mailbox.disconnect()

    def _schedule_reconnect(self) -> None:
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            logger.debug("Reconnect already scheduled")
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after(self.retry_delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closed:
            return
        await self._connect()

    # ------------------------------------------------------------------
    # Scanning and dispatch
    # ------------------------------------------------------------------

    async def scan_unseen(self) -> None:
        """
        Search for unseen messages and process them.

        Search and fetch failures are logged and end this cycle.

        Raises:
            MailboxNotConnectedError: If there is no live connection
        """
        mailbox = self._require_mailbox()

        async with self._scan_lock:
            try:
                message_ids = await mailbox.search_unseen()
            except MailboxNotConnectedError:
                raise
            except Exception as e:
                logger.error(f"Error searching for unseen emails: {e}")
                return

            if not message_ids:
                logger.debug("No unseen messages")
                return

            logger.info(f"Found {len(message_ids)} unseen message(s)")
            await self.fetch_and_dispatch(message_ids)

    async def fetch_and_dispatch(self, message_ids: Iterable[str]) -> None:
        """
        Fetch messages (marking them seen), parse them and reply to the allowed sender.

        Raises:
            MailboxNotConnectedError: If there is no live connection
        """
        mailbox = self._require_mailbox()

        try:
            fetched = await mailbox.fetch(list(message_ids))
        except MailboxNotConnectedError:
            raise
        except Exception as e:
            logger.error(f"Error fetching messages: {e}")
            return

        for uid, raw in fetched:
            try:
                message = parse_message(uid, raw)
            except Exception as e:
                logger.error(f"Parsing error for message {uid}: {e}")
                continue

            logger.info(f"Received email from: {message.sender} | Subject: {message.subject}")

            if not self.is_allowed_sender(message.sender):
                continue

            # Sequence numbers are reused after EXPUNGE, so only a Message-ID is a safe key
            if message.message_id and self._dispatched_recently(message.message_id):
                logger.info(f"Skipping duplicate dispatch of {message.message_id}")
                continue

            logger.info("Valid sender found - generating reply...")
            self._dispatch(message)

    def is_allowed_sender(self, sender: str) -> bool:
        if not sender or not self.allowed_sender:
            return False
        if self.case_sensitive:
            return sender == self.allowed_sender
        return sender.casefold() == self.allowed_sender.casefold()

    async def drain(self) -> None:
        """Wait for every in-flight reply to finish"""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def _dispatch(self, message: IncomingMessage) -> None:
        task = asyncio.create_task(self._reply_to(message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _reply_to(self, message: IncomingMessage) -> None:
        try:
            reply_text = await self.reply_generator.generate(
                message.sender,
                message.subject,
                message.body_text
            )
            await self.mail_transport.send(
                message.sender,
                message.subject,
                reply_text,
                in_reply_to=message.message_id,
                references=message.references
            )
        except Exception as e:
            logger.error(f"Reply failed for message {message.message_id or message.uid}: {e}")

    def _dispatched_recently(self, message_id: str) -> bool:
        if self.dedupe_window <= 0:
            return False

        now = time.monotonic()
        self._recently_dispatched = {
            key: stamp
            for key, stamp in self._recently_dispatched.items()
            if now - stamp < self.dedupe_window
        }
        if message_id in self._recently_dispatched:
            return True

        self._recently_dispatched[message_id] = now
        return False

    def _require_mailbox(self) -> IMAPClient:
        mailbox = self._mailbox
        if mailbox is None or not mailbox.is_ready:
            raise MailboxNotConnectedError("Mailbox is not connected")
        return mailbox
