"""
Async IMAP client for watching a single mailbox
"""
import asyncio
import logging
import re
import ssl
from typing import Iterable, List, Optional, Tuple

import aioimaplib

from .exceptions import MailboxCommandError, MailboxNotConnectedError

logger = logging.getLogger(__name__)

FETCH_LINE = re.compile(rb"^(\d+) FETCH ")
EXISTS_LINE = re.compile(rb"^(\d+) EXISTS")


class IMAPClient:
    """Client for one long-lived IMAP connection with IDLE support"""

    IDLE_TIMEOUT = 29 * 60  # re-issue IDLE before the server's 30 minute cutoff
    DONE_TIMEOUT = 10.0

    def __init__(
        self,
        imap_server: str,
        email_address: str,
        password: str,
        port: int = 993,
        mailbox: str = "INBOX",
        verify_certs: bool = True,
        timeout: float = 30.0
    ):
        self.imap_server = imap_server
        self.email_address = email_address
        self.password = password
        self.port = port
        self.mailbox = mailbox
        self.verify_certs = verify_certs
        self.timeout = timeout
        self.connection: Optional[aioimaplib.IMAP4_SSL] = None
        self._lock = asyncio.Lock()
        self._connection_lost = asyncio.Event()
        self._command_waiting = asyncio.Event()
        self._waiting_commands = 0

    @property
    def is_ready(self) -> bool:
        """True while logged in with the mailbox selected and the socket still open"""
        return not self._connection_lost.is_set() and self._state() == "SELECTED"

    def _state(self) -> Optional[str]:
        if self.connection is None or self.connection.protocol is None:
            return None
        return self.connection.protocol.state

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.verify_certs:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self) -> None:
        """Establish connection, log in and select the mailbox"""
        logger.info(f"Connecting to {self.imap_server}:{self.port}")
        self._connection_lost.clear()
        connection = aioimaplib.IMAP4_SSL(
            host=self.imap_server,
            port=self.port,
            timeout=self.timeout,
            ssl_context=self._ssl_context()
        )
        # protocol.state is never updated on socket loss; conn_lost_cb is the only signal
        connection.protocol.conn_lost_cb = self._on_connection_lost

        try:
            await connection.wait_hello_from_server()
            self._check(await connection.login(self.email_address, self.password), "LOGIN")
            self._check(await connection.select(self.mailbox), "SELECT")
        except Exception:
            await self._close_quietly(connection)
            raise

        self.connection = connection
        logger.info(f"Connected to IMAP server, selected {self.mailbox}")

    async def disconnect(self) -> None:
        """Close connection to IMAP server"""
        if self.connection:
            try:
                if self._connection_lost.is_set():
                    logger.info("IMAP connection already closed by server")
                    return
                if self.connection.has_pending_idle():
                    self.connection.idle_done()
                await self.connection.logout()
                logger.info("Disconnected from IMAP server")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self.connection = None

    async def search_unseen(self) -> List[str]:
        """
        Search the selected mailbox for unseen messages

        Returns:
            Sequence identifiers, in the order the server returned them
        """
        response = await self._execute("SEARCH", "search", "UNSEEN", charset=None)
        if not response.lines:
            return []

        return [
            token.decode()
            for token in bytes(response.lines[0]).split()
            if token.isdigit()
        ]

    async def fetch(self, message_ids: Iterable[str]) -> List[Tuple[str, bytes]]:
        """
        Fetch full messages. An RFC822 fetch sets the \\Seen flag on the server.

        Args:
            message_ids: Sequence identifiers from search_unseen

        Returns:
            List of (sequence identifier, raw message bytes)
        """
        message_set = ",".join(message_ids)
        response = await self._execute("FETCH", "fetch", message_set, "(RFC822)")

        messages = []
        current_id = None
        for line in response.lines:
            # Literals (the message bodies) come back as bytearray, status lines as bytes
            if isinstance(line, bytearray):
                if current_id is not None:
                    messages.append((current_id, bytes(line)))
                    current_id = None
            elif isinstance(line, bytes):
                match = FETCH_LINE.match(line)
                if match:
                    current_id = match.group(1).decode()

        return messages

    async def wait_for_new_mail(self) -> Optional[int]:
        """
        Sit in IDLE until the server pushes something or the IDLE period ends.

        Returns:
            The EXISTS count from the push, or None if no new mail was announced

        Raises:
            ConnectionError: If the connection closed while idling
        """
        connection = self._require_connection()

        async with self._lock:
            idle = await connection.idle_start(timeout=self.IDLE_TIMEOUT)
            push = asyncio.ensure_future(connection.wait_server_push())
            # Already set if a command queued up while IDLE was being acknowledged
            command = asyncio.ensure_future(self._command_waiting.wait())
            try:
                await self._wait_unless_lost({idle, push, command})
            finally:
                command.cancel()
                if not push.done():
                    push.cancel()
                if self.is_ready and connection.has_pending_idle():
                    if self._command_waiting.is_set():
                        logger.debug("Leaving IDLE to run a command")
                    connection.idle_done()

            if self.is_ready:
                await self._wait_unless_lost({idle}, timeout=self.DONE_TIMEOUT)

            if not self.is_ready:
                raise ConnectionError("IMAP connection closed by server")
            if not idle.done():
                raise ConnectionError("IMAP server did not end IDLE")

        if not push.done() or push.cancelled() or push.exception() is not None:
            return None
        return self._exists_count(push.result())

    async def _execute(self, command: str, method: str, *args, **kwargs):
        connection = self._require_connection()
        self._waiting_commands += 1
        self._command_waiting.set()
        try:
            async with self._lock:
                response = await getattr(connection, method)(*args, **kwargs)
        finally:
            self._waiting_commands -= 1
            if not self._waiting_commands:
                self._command_waiting.clear()
        self._check(response, command)
        return response

    async def _wait_unless_lost(self, waitables, timeout: Optional[float] = None) -> None:
        """Wait for the first of waitables, or less if the socket drops"""
        closed = asyncio.ensure_future(self._connection_lost.wait())
        try:
            await asyncio.wait(
                {closed, *waitables},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closed.cancel()

    def _on_connection_lost(self, exc: Optional[Exception]) -> None:
        if not self._connection_lost.is_set():
            logger.warning(f"IMAP connection lost: {exc or 'closed by server'}")
        self._connection_lost.set()

    def _require_connection(self) -> aioimaplib.IMAP4_SSL:
        if not self.is_ready:
            raise MailboxNotConnectedError("Not connected to IMAP server")
        return self.connection

    @staticmethod
    def _check(response, command: str) -> None:
        if response.result != "OK":
            detail = ""
            if response.lines:
                last = response.lines[-1]
                detail = last.decode(errors="replace") if isinstance(last, (bytes, bytearray)) else str(last)
            raise MailboxCommandError(command, response.result, detail)

    @staticmethod
    def _exists_count(lines) -> Optional[int]:
        count = None
        for line in lines or []:
            if isinstance(line, str):
                line = line.encode()
            match = EXISTS_LINE.match(bytes(line))
            if match:
                count = int(match.group(1))
        return count

    @staticmethod
    async def _close_quietly(connection: aioimaplib.IMAP4_SSL) -> None:
        try:
            await connection.logout()
        except Exception as e:
            logger.debug(f"Ignoring error while closing failed connection: {e}")


def create_imap_client(settings) -> IMAPClient:
    """
    Build an IMAP client from settings.

    Returns:
        IMAPClient instance (not yet connected)
    """
    return IMAPClient(
        imap_server=settings.imap_host,
        email_address=settings.email_user,
        password=settings.email_pass,
        port=settings.imap_port,
        mailbox=settings.imap_mailbox,
        verify_certs=not settings.imap_skip_cert_verify
    )
