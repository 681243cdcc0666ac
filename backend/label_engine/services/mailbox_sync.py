"""Mailbox sync — mirrors assigned labels into the account's IMAP server.

Gmail exposes labels as mailboxes, so a label is applied by copying the message
into the label mailbox. Generic servers get a real folder copy when they allow
it, then a keyword flag, then \\Flagged for important labels.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Callable, Optional

from sqlalchemy import select

from label_engine.database import async_session
from label_engine.errors import MailboxError, NotFoundError
from label_engine.models.account import Account
from label_engine.models.email import Email
from label_engine.services.encryption import decrypt_password
from label_engine.services.heuristics import UNCATEGORIZED
from label_engine.services.imap_client import IMAP_ERRORS, Envelope, ImapMailboxClient, MailboxCapabilities
from label_engine.services.labels import SYSTEM_LABELS

logger = logging.getLogger(__name__)

GMAIL_ALL_MAIL = "[Gmail]/All Mail"
DEFAULT_MAILBOX = "INBOX"
IMPORTANT_WORDS = ("urgent", "escalation", "priority", "critical", "important")
UNSUPPORTED_ERROR = "IMAP server does not support folders, keywords, or custom labels"

_KEYWORD_UNSAFE = re.compile(r'[\s(){%*"\\\]\x00-\x1f]+')


def is_important(label_name: str) -> bool:
    lowered = label_name.lower()
    return any(word in lowered for word in IMPORTANT_WORDS)


def to_keyword(label_name: str) -> str:
    """IMAP keyword form of a label name (atom characters only)."""
    return _KEYWORD_UNSAFE.sub("_", label_name.strip()).strip("_") or "Label"


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").split()).casefold()


@dataclass
class MessageLocator:
    """How to find one message on the server.

    A UID only counts together with its mailbox, and only while the mailbox keeps
    the UIDVALIDITY it had when the UID was recorded.
    """
    message_id: Optional[str] = None
    uid: Optional[int] = None
    mailbox: Optional[str] = None
    uid_validity: Optional[int] = None
    expected_subject: Optional[str] = None
    expected_sender: Optional[str] = None

    @classmethod
    def from_email(cls, email: Email) -> "MessageLocator":
        return cls(
            message_id=email.message_id,
            uid=email.imap_uid,
            mailbox=email.imap_mailbox,
            uid_validity=email.imap_uid_validity,
            expected_subject=email.subject,
            expected_sender=email.sender,
        )

    def matches(self, envelope: Envelope) -> bool:
        """Does the fetched envelope belong to the message we meant?"""
        if self.expected_subject is not None and _normalize(envelope.subject) != _normalize(self.expected_subject):
            return False
        if self.expected_sender:
            expected = parseaddr(self.expected_sender)[1] or self.expected_sender
            actual = parseaddr(envelope.sender)[1] or envelope.sender
            if expected.lower() != actual.lower():
                return False
        return True

    def __str__(self):
        return f"uid={self.uid} mailbox={self.mailbox!r} message_id={self.message_id!r}"


@dataclass
class SyncResult:
    success: bool
    method: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        data = {"success": self.success, "method": self.method}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SyncContext:
    client: ImapMailboxClient
    uid: int
    label_name: str
    is_gmail: bool
    capabilities: MailboxCapabilities


class LabelStrategy:
    """One way of recording a label on the server."""

    def applies(self, ctx: SyncContext) -> bool:
        return True

    def method(self, ctx: SyncContext) -> str:
        raise NotImplementedError

    async def apply(self, ctx: SyncContext):
        """Raise MailboxError when the server refuses."""
        raise NotImplementedError


class MailboxCopyStrategy(LabelStrategy):
    """Ensure a mailbox named after the label exists and copy the message into it."""

    def method(self, ctx):
        return "gmail-copy" if ctx.is_gmail else "folder-copy"

    async def apply(self, ctx):
        await ctx.client.create_mailbox(ctx.label_name)
        await ctx.client.copy_message(ctx.uid, ctx.label_name)

        if not ctx.is_gmail and is_important(ctx.label_name):
            try:
                await ctx.client.add_flags(ctx.uid, ["\\Flagged"])
            except MailboxError as e:
                logger.warning(f"Copied UID {ctx.uid} but could not flag it: {e}")


class KeywordFlagStrategy(LabelStrategy):
    """Store the label as a custom IMAP keyword."""

    def applies(self, ctx):
        return ctx.capabilities.supports_keywords

    def method(self, ctx):
        return "keyword"

    async def apply(self, ctx):
        await ctx.client.add_flags(ctx.uid, [to_keyword(ctx.label_name)])


class StandardFlagStrategy(LabelStrategy):
    """Last resort on generic servers: \\Flagged for labels that mean importance."""

    def applies(self, ctx):
        return not ctx.is_gmail and is_important(ctx.label_name)

    def method(self, ctx):
        return "flag"

    async def apply(self, ctx):
        await ctx.client.add_flags(ctx.uid, ["\\Flagged"])


DEFAULT_STRATEGIES = [MailboxCopyStrategy(), KeywordFlagStrategy(), StandardFlagStrategy()]


def default_client_factory(account: Account) -> ImapMailboxClient:
    return ImapMailboxClient(
        host=account.imap_host,
        port=account.imap_port,
        username=account.imap_username,
        password=decrypt_password(account.imap_password_encrypted),
    )


class MailboxSyncAdapter:
    """Applies labels to messages on the account's server, degrading across strategies."""

    def __init__(
        self,
        strategies: Optional[list[LabelStrategy]] = None,
        client_factory: Callable[[Account], ImapMailboxClient] = default_client_factory,
        session_factory=async_session,
    ):
        self.strategies = strategies if strategies is not None else list(DEFAULT_STRATEGIES)
        self._client_factory = client_factory
        self._session_factory = session_factory

    async def open_client(self, account: Account) -> ImapMailboxClient:
        """An authenticated connection the caller must log out."""
        client = self._client_factory(account)
        await client.connect()
        return client

    @asynccontextmanager
    async def connect(self, account: Account):
        """One authenticated connection, closed on exit."""
        client = await self.open_client(account)
        try:
            yield client
        finally:
            await client.logout()

    async def sync_label(
        self,
        account: Account,
        locator: MessageLocator,
        label_name: str,
        client: Optional[ImapMailboxClient] = None,
    ) -> SyncResult:
        """Mirror one label onto one message. Never raises for server-side problems."""
        if label_name == UNCATEGORIZED:
            return SyncResult(False, "skipped", f"{UNCATEGORIZED} is never synced")

        try:
            if client is None:
                async with self.connect(account) as own_client:
                    result = await self._sync_with(own_client, account, locator, label_name)
            else:
                result = await self._sync_with(client, account, locator, label_name)
        except (MailboxError, NotFoundError, ValueError, *IMAP_ERRORS) as e:
            result = SyncResult(False, None, str(e) or type(e).__name__)

        if result.success:
            logger.info(f"Synced '{label_name}' to account {account.id} ({locator}) via {result.method}")
        else:
            logger.error(
                f"Mailbox sync failed: account={account.id} {locator} label='{label_name}' "
                f"method={result.method} error={result.error}"
            )
        return result

    async def _sync_with(
        self, client: ImapMailboxClient, account: Account, locator: MessageLocator, label_name: str
    ) -> SyncResult:
        uid, capabilities = await self._locate(client, account, locator)

        if locator.expected_subject is not None or locator.expected_sender:
            envelope = await client.fetch_envelope(uid)
            if envelope is None:
                return SyncResult(False, None, f"Could not fetch envelope for UID {uid}")
            if not locator.matches(envelope):
                return SyncResult(
                    False, None,
                    f"Envelope mismatch for UID {uid}: got '{envelope.subject}' from {envelope.sender}",
                )

        ctx = SyncContext(
            client=client,
            uid=uid,
            label_name=label_name,
            is_gmail=account.is_gmail,
            capabilities=capabilities,
        )

        attempted = None
        for strategy in self.strategies:
            if not strategy.applies(ctx):
                continue
            attempted = strategy.method(ctx)
            try:
                await strategy.apply(ctx)
                return SyncResult(True, attempted)
            except MailboxError as e:
                logger.warning(
                    f"{attempted} failed: account={account.id} {locator} uid={uid} label='{label_name}': {e}"
                )

        return SyncResult(False, attempted, UNSUPPORTED_ERROR)

    async def _locate(
        self, client: ImapMailboxClient, account: Account, locator: MessageLocator
    ) -> tuple[int, MailboxCapabilities]:
        """Resolve the locator to a UID in the currently selected mailbox."""
        if locator.uid is not None and locator.mailbox:
            # Opening the stored mailbox is mandatory; failure aborts rather than guessing
            capabilities = await client.select(locator.mailbox)
            if (
                locator.uid_validity is None
                or capabilities.uid_validity is None
                or locator.uid_validity == capabilities.uid_validity
            ):
                return locator.uid, capabilities

            logger.warning(
                f"UIDVALIDITY of '{locator.mailbox}' changed "
                f"({locator.uid_validity} -> {capabilities.uid_validity}), searching by Message-ID"
            )
            if not locator.message_id:
                raise NotFoundError(f"Stored UID is stale and no Message-ID is known ({locator})")
            uid = await client.search_message_id(locator.message_id)
            if uid is None:
                raise NotFoundError(f"Message {locator.message_id} not found in {locator.mailbox}")
            return uid, capabilities

        if locator.uid is not None:
            logger.warning(f"Ignoring UID {locator.uid} without a mailbox, searching by Message-ID")

        if not locator.message_id:
            raise NotFoundError(f"No usable locator ({locator})")

        mailbox = GMAIL_ALL_MAIL if account.is_gmail else DEFAULT_MAILBOX
        capabilities = await client.select(mailbox)
        uid = await client.search_message_id(locator.message_id)
        if uid is None:
            raise NotFoundError(f"Message {locator.message_id} not found in {mailbox}")
        return uid, capabilities

    async def sync_email_label(
        self, email_id: int, label_name: str, client: Optional[ImapMailboxClient] = None
    ) -> SyncResult:
        """Load an email and its account, then sync one label."""
        async with self._session_factory() as db:
            row = (await db.execute(
                select(Email, Account)
                .join(Account, Account.id == Email.account_id)
                .where(Email.id == email_id)
            )).first()

        if row is None:
            logger.error(f"Mailbox sync skipped: email {email_id} or its account not found")
            return SyncResult(False, None, f"Email {email_id} or its account not found")

        email, account = row
        return await self.sync_label(account, MessageLocator.from_email(email), label_name, client=client)

    async def initialize_system_labels_in_mailbox(
        self, account: Account, client: Optional[ImapMailboxClient] = None
    ) -> dict:
        """Create the system label mailboxes. Partial failure is reported, not raised."""
        report = {"success": True, "created": [], "existing": [], "errors": []}

        async def create_all(c: ImapMailboxClient):
            for name in SYSTEM_LABELS:
                try:
                    if await c.create_mailbox(name):
                        report["created"].append(name)
                    else:
                        report["existing"].append(name)
                except MailboxError as e:
                    logger.warning(f"Could not create '{name}' for account {account.id}: {e}")
                    report["errors"].append({"label": name, "error": str(e)})

        try:
            if client is None:
                async with self.connect(account) as own_client:
                    await create_all(own_client)
            else:
                await create_all(client)
        except (MailboxError, ValueError) as e:
            report["errors"].append({"label": None, "error": str(e)})

        report["success"] = not report["errors"]
        logger.info(
            f"System labels for account {account.id}: created={report['created']} "
            f"existing={report['existing']} errors={len(report['errors'])}"
        )
        return report


# Singleton
mailbox_sync = MailboxSyncAdapter()
