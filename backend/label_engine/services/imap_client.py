"""IMAP mailbox client — the aioimaplib primitives used for label sync."""

import asyncio
import email
import logging
import re
import ssl
from dataclasses import dataclass
from email import policy
from typing import Optional

import aioimaplib

from label_engine.config import settings
from label_engine.errors import MailboxError

logger = logging.getLogger(__name__)

_PERMANENTFLAGS = re.compile(r"PERMANENTFLAGS \(([^)]*)\)", re.IGNORECASE)
_UIDVALIDITY = re.compile(r"UIDVALIDITY (\d+)", re.IGNORECASE)

# Raised by aioimaplib itself, as opposed to a NO/BAD response
IMAP_ERRORS = (aioimaplib.AioImapException, asyncio.TimeoutError, OSError)


@dataclass
class MailboxCapabilities:
    """What the selected mailbox lets us store."""
    permanent_flags: Optional[tuple[str, ...]] = None  # None: server did not say
    uid_validity: Optional[int] = None

    @property
    def supports_keywords(self) -> bool:
        # \* in PERMANENTFLAGS means arbitrary keywords can be created
        if self.permanent_flags is None:
            return True
        return "\\*" in self.permanent_flags


@dataclass
class Envelope:
    subject: str
    sender: str


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for IMAP commands."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _decode(line) -> str:
    return line if isinstance(line, str) else bytes(line).decode("utf-8", errors="replace")


class ImapMailboxClient:
    """A single authenticated IMAP connection."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
    ):
        self.host = host
        self.port = port
        self._username = username
        self._password = password
        self._timeout = timeout or settings.imap_timeout
        self._verify_ssl = settings.imap_verify_ssl if verify_ssl is None else verify_ssl
        self._client: Optional[aioimaplib.IMAP4_SSL] = None
        self.selected_mailbox: Optional[str] = None

    async def connect(self):
        """Open and authenticate the connection."""
        logger.info(f"Connecting to IMAP: {self.host}:{self.port}")

        ssl_context = ssl.create_default_context()
        if not self._verify_ssl:
            # Local bridges use self-signed certificates
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        try:
            self._client = aioimaplib.IMAP4_SSL(
                host=self.host,
                port=self.port,
                ssl_context=ssl_context,
                timeout=self._timeout,
            )
            await self._client.wait_hello_from_server()
            response = await self._client.login(self._username, self._password)
        except Exception as e:
            self._client = None
            raise MailboxError(f"Connection to {self.host} failed: {e}") from e

        if response.result != "OK":
            self._client = None
            raise MailboxError(f"Login to {self.host} failed: {response.lines}")

        logger.info(f"IMAP connection to {self.host} established")

    async def logout(self):
        if self._client:
            try:
                await self._client.logout()
            except Exception as e:
                logger.debug(f"IMAP logout from {self.host} failed: {e}")
            self._client = None
        self.selected_mailbox = None

    async def select(self, mailbox: str) -> MailboxCapabilities:
        """Open a mailbox; UIDs are only meaningful inside the mailbox they came from."""
        self.selected_mailbox = None
        response = await self._command("select", quote_mailbox(mailbox))
        if response.result != "OK":
            raise MailboxError(f"Cannot open mailbox '{mailbox}': {response.lines}")

        self.selected_mailbox = mailbox
        capabilities = MailboxCapabilities()
        for line in response.lines:
            text = _decode(line)
            flags = _PERMANENTFLAGS.search(text)
            if flags and capabilities.permanent_flags is None:
                capabilities.permanent_flags = tuple(flags.group(1).split())
            validity = _UIDVALIDITY.search(text)
            if validity and capabilities.uid_validity is None:
                capabilities.uid_validity = int(validity.group(1))
        return capabilities

    async def search_message_id(self, message_id: str) -> Optional[int]:
        """UID of the message with this Message-ID header in the selected mailbox."""
        needle = message_id.replace('"', "")
        response = await self._command("uid_search", f'HEADER Message-ID "{needle}"')
        if response.result != "OK":
            raise MailboxError(f"Message-ID search failed: {response.lines}")

        uid_line = _decode(response.lines[0]) if response.lines else ""
        uids = [int(u) for u in uid_line.split() if u.isdigit()]
        return uids[-1] if uids else None

    async def fetch_envelope(self, uid: int) -> Optional[Envelope]:
        """Subject and sender address of a message, without marking it read."""
        response = await self._command(
            "uid", "fetch", str(uid), "(BODY.PEEK[HEADER.FIELDS (SUBJECT FROM)])"
        )
        if response.result != "OK":
            raise MailboxError(f"Fetch of UID {uid} failed: {response.lines}")

        # The header block arrives as an IMAP literal
        header_data = None
        for item in response.lines:
            if isinstance(item, bytearray):
                header_data = bytes(item)
                break
        if header_data is None:
            for item in response.lines:
                text = _decode(item)
                if re.search(r"^(subject|from):", text, re.IGNORECASE | re.MULTILINE):
                    header_data = text.encode("utf-8")
                    break
        if header_data is None:
            return None

        msg = email.message_from_bytes(header_data, policy=policy.default)
        from_header = msg.get("From")
        addresses = getattr(from_header, "addresses", ()) if from_header else ()
        sender = addresses[0].addr_spec if addresses else str(from_header or "")
        return Envelope(subject=str(msg.get("Subject", "") or ""), sender=sender)

    async def create_mailbox(self, name: str) -> bool:
        """Create a mailbox. Returns False when it already exists."""
        response = await self._command("create", quote_mailbox(name))
        if response.result == "OK":
            logger.info(f"Created mailbox '{name}' on {self.host}")
            return True

        detail = " ".join(_decode(line) for line in response.lines)
        if "ALREADYEXISTS" in detail.upper() or "ALREADY EXISTS" in detail.upper():
            return False
        raise MailboxError(f"Cannot create mailbox '{name}': {detail}")

    async def copy_message(self, uid: int, mailbox: str):
        response = await self._command("uid", "copy", str(uid), quote_mailbox(mailbox))
        if response.result != "OK":
            raise MailboxError(f"Copy of UID {uid} to '{mailbox}' failed: {response.lines}")

    async def add_flags(self, uid: int, flags: list[str]):
        response = await self._command("uid", "store", str(uid), "+FLAGS", f"({' '.join(flags)})")
        if response.result != "OK":
            raise MailboxError(f"Storing flags {flags} on UID {uid} failed: {response.lines}")

    async def _command(self, name: str, *args):
        """Run one aioimaplib command; timeouts and dropped connections become MailboxError."""
        client = self._require()
        try:
            return await getattr(client, name)(*args)
        except IMAP_ERRORS as e:
            detail = str(e) or type(e).__name__
            raise MailboxError(f"IMAP {name} {' '.join(args[:1])} on {self.host} failed: {detail}") from e

    def _require(self) -> aioimaplib.IMAP4_SSL:
        if self._client is None:
            raise MailboxError("Not connected")
        return self._client
