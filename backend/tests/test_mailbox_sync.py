"""
Tests for mailbox sync: message location, envelope checks and the strategy fallback chain.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import aioimaplib
import pytest

from fakes import FakeClientFactory, FakeImapClient
from label_engine.models.account import Account
from label_engine.services.imap_client import Envelope, ImapMailboxClient
from label_engine.services.mailbox_sync import (
    GMAIL_ALL_MAIL,
    UNSUPPORTED_ERROR,
    MailboxSyncAdapter,
    MessageLocator,
    is_important,
    to_keyword,
)

NO_KEYWORDS = ("\\Seen", "\\Answered", "\\Flagged", "\\Deleted", "\\Draft")


def gmail_account() -> Account:
    return Account(id=1, user_id=1, imap_host="imap.gmail.com", imap_username="me@gmail.com", provider_type="gmail")


def generic_account() -> Account:
    return Account(id=2, user_id=1, imap_host="mail.example.com", imap_username="me@example.com", provider_type="imap")


def adapter_for(client: FakeImapClient) -> MailboxSyncAdapter:
    return MailboxSyncAdapter(client_factory=FakeClientFactory(client))


class TestLocating:
    async def test_uid_used_in_its_own_mailbox(self):
        client = FakeImapClient()
        locator = MessageLocator(uid=42, mailbox="Archived")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Project Alpha")

        assert result.success
        assert client.selected == ["Archived"]
        assert client.copied == [(42, "Project Alpha")]
        assert client.searched == []

    async def test_unopenable_mailbox_aborts(self):
        client = FakeImapClient(failing_selects={"Archived"})
        locator = MessageLocator(uid=42, mailbox="Archived", message_id="<m1@acme.com>")

        result = await adapter_for(client).sync_label(generic_account(), locator, "Project Alpha")

        assert not result.success
        assert "Archived" in result.error
        assert client.selected == ["Archived"]
        assert client.copied == [] and client.flagged == []

    async def test_uid_without_mailbox_searches_message_id(self):
        client = FakeImapClient(uids={"<m1@acme.com>": 7})
        locator = MessageLocator(uid=42, message_id="<m1@acme.com>")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Project Alpha")

        assert result.success
        assert client.selected == [GMAIL_ALL_MAIL]
        assert client.searched == ["<m1@acme.com>"]
        assert client.copied == [(7, "Project Alpha")]

    async def test_generic_server_searches_inbox(self):
        client = FakeImapClient(uids={"<m1@acme.com>": 7})
        locator = MessageLocator(message_id="<m1@acme.com>")

        await adapter_for(client).sync_label(generic_account(), locator, "Project Alpha")
        assert client.selected == ["INBOX"]

    async def test_message_not_found(self):
        client = FakeImapClient()
        locator = MessageLocator(message_id="<missing@acme.com>")

        result = await adapter_for(client).sync_label(generic_account(), locator, "Project Alpha")

        assert not result.success
        assert "not found" in result.error

    async def test_matching_uid_validity_trusts_uid(self):
        client = FakeImapClient(uid_validity=7001)
        locator = MessageLocator(uid=42, mailbox="Archived", uid_validity=7001, message_id="<m1@acme.com>")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Project Alpha")

        assert result.success
        assert client.searched == []
        assert client.copied == [(42, "Project Alpha")]

    async def test_changed_uid_validity_searches_same_mailbox(self):
        client = FakeImapClient(uid_validity=9002, uids={"<m1@acme.com>": 3})
        locator = MessageLocator(uid=42, mailbox="Archived", uid_validity=7001, message_id="<m1@acme.com>")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Project Alpha")

        assert result.success
        assert client.selected == ["Archived"]
        assert client.searched == ["<m1@acme.com>"]
        assert client.copied == [(3, "Project Alpha")]

    async def test_changed_uid_validity_without_message_id(self):
        client = FakeImapClient(uid_validity=9002)
        locator = MessageLocator(uid=42, mailbox="Archived", uid_validity=7001)

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Project Alpha")

        assert not result.success
        assert "stale" in result.error
        assert client.copied == [] and client.flagged == []

    async def test_no_locator(self):
        result = await adapter_for(FakeImapClient()).sync_label(generic_account(), MessageLocator(), "Project Alpha")
        assert not result.success


class TestEnvelopeCheck:
    async def test_mismatch_aborts(self):
        client = FakeImapClient(envelopes={42: Envelope(subject="Lunch plans", sender="eve@other.com")})
        locator = MessageLocator(uid=42, mailbox="INBOX", expected_subject="Invoice March", expected_sender="billing@acme.com")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Invoices")

        assert not result.success
        assert "mismatch" in result.error.lower()
        assert client.copied == []

    async def test_match_ignores_case_whitespace_and_display_name(self):
        client = FakeImapClient(envelopes={42: Envelope(subject="invoice  march", sender="BILLING@acme.com")})
        locator = MessageLocator(
            uid=42, mailbox="INBOX",
            expected_subject="Invoice March", expected_sender="Billing Team <billing@acme.com>",
        )

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Invoices")
        assert result.success

    async def test_missing_envelope_aborts(self):
        client = FakeImapClient()
        locator = MessageLocator(uid=42, mailbox="INBOX", expected_subject="Invoice March")

        result = await adapter_for(client).sync_label(gmail_account(), locator, "Invoices")
        assert not result.success
        assert client.copied == []


class TestStrategies:
    async def test_gmail_copy(self):
        client = FakeImapClient()
        result = await adapter_for(client).sync_label(gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Travel")

        assert result.method == "gmail-copy"
        assert client.created == ["Travel"]
        assert client.flagged == []

    async def test_gmail_copy_failure_falls_back_to_keyword(self):
        client = FakeImapClient(copy_error=True)
        result = await adapter_for(client).sync_label(
            gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Project Alpha"
        )

        assert result.success
        assert result.method == "keyword"
        assert client.flagged == [(1, ("Project_Alpha",))]

    async def test_folder_copy_flags_important_labels(self):
        client = FakeImapClient()
        result = await adapter_for(client).sync_label(generic_account(), MessageLocator(uid=1, mailbox="INBOX"), "Urgent")

        assert result.method == "folder-copy"
        assert client.copied == [(1, "Urgent")]
        assert client.flagged == [(1, ("\\Flagged",))]

    async def test_existing_folder_reused(self):
        client = FakeImapClient(existing={"Travel"})
        result = await adapter_for(client).sync_label(generic_account(), MessageLocator(uid=1, mailbox="INBOX"), "Travel")

        assert result.success
        assert client.created == []
        assert client.copied == [(1, "Travel")]

    async def test_standard_flag_as_last_resort(self):
        client = FakeImapClient(permanent_flags=NO_KEYWORDS, failing_creates={"Escalation"})
        result = await adapter_for(client).sync_label(
            generic_account(), MessageLocator(uid=5, mailbox="INBOX"), "Escalation"
        )

        assert result.success
        assert result.method == "flag"
        assert client.flagged == [(5, ("\\Flagged",))]

    async def test_rejected_keyword_falls_back_to_flag(self):
        client = FakeImapClient(copy_error=True, rejected_flags={"Critical_issue"})
        result = await adapter_for(client).sync_label(
            generic_account(), MessageLocator(uid=5, mailbox="INBOX"), "Critical issue"
        )

        assert result.method == "flag"

    async def test_nothing_supported(self):
        client = FakeImapClient(permanent_flags=NO_KEYWORDS, copy_error=True)
        result = await adapter_for(client).sync_label(generic_account(), MessageLocator(uid=5, mailbox="INBOX"), "Travel")

        assert not result.success
        assert result.error == UNSUPPORTED_ERROR

    async def test_uncategorized_never_synced(self):
        client = FakeImapClient()
        factory = FakeClientFactory(client)
        adapter = MailboxSyncAdapter(client_factory=factory)

        result = await adapter.sync_label(gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Uncategorized")

        assert not result.success
        assert result.method == "skipped"
        assert factory.opened == 0


class TestConnections:
    async def test_connection_failure_reported(self):
        client = FakeImapClient(connect_error=True)
        result = await adapter_for(client).sync_label(gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Travel")

        assert not result.success
        assert "refused" in result.error

    async def test_own_connection_closed(self):
        client = FakeImapClient()
        await adapter_for(client).sync_label(gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Travel")
        assert client.logged_out

    async def test_shared_connection_left_open(self):
        client = FakeImapClient()
        factory = FakeClientFactory(client)
        adapter = MailboxSyncAdapter(client_factory=factory)

        await adapter.sync_label(gmail_account(), MessageLocator(uid=1, mailbox="INBOX"), "Travel", client=client)

        assert factory.opened == 0
        assert not client.logged_out

    async def test_sync_email_label_loads_locator(self, seed, session_factory):
        account = await seed.account(user_id=1, provider_type="gmail", imap_host="imap.gmail.com")
        email = await seed.email(account, subject="Trip", sender="travel@acme.com", imap_uid=9, imap_mailbox="Trips")
        client = FakeImapClient(envelopes={9: Envelope(subject="Trip", sender="travel@acme.com")})
        adapter = MailboxSyncAdapter(client_factory=FakeClientFactory(client), session_factory=session_factory)

        result = await adapter.sync_email_label(email.id, "Travel")

        assert result.success
        assert client.selected == ["Trips"]
        assert client.copied == [(9, "Travel")]

    async def test_sync_email_label_unknown_email(self, session_factory):
        adapter = MailboxSyncAdapter(client_factory=FakeClientFactory(), session_factory=session_factory)
        result = await adapter.sync_email_label(404, "Travel")
        assert not result.success


class TestSystemLabelInitialization:
    async def test_partial_failure_reported(self):
        client = FakeImapClient(existing={"MOM"}, failing_creates={"Urgent"})

        report = await adapter_for(client).initialize_system_labels_in_mailbox(generic_account())

        assert report["success"] is False
        assert report["created"] == ["Escalation"]
        assert report["existing"] == ["MOM"]
        assert [e["label"] for e in report["errors"]] == ["Urgent"]

    async def test_all_created(self):
        client = FakeImapClient()
        report = await adapter_for(client).initialize_system_labels_in_mailbox(gmail_account())

        assert report["success"] is True
        assert sorted(report["created"]) == ["Escalation", "MOM", "Urgent"]

    async def test_unreachable_server(self):
        client = FakeImapClient(connect_error=True)
        report = await adapter_for(client).initialize_system_labels_in_mailbox(gmail_account())

        assert report["success"] is False
        assert report["created"] == []


@pytest.mark.parametrize("name, expected", [
    ("Project Alpha", "Project_Alpha"),
    ("  Q3 (draft)  ", "Q3_draft"),
    ('"*"', "Label"),
])
def test_to_keyword(name, expected):
    assert to_keyword(name) == expected


def test_is_important():
    assert is_important("Critical issue")
    assert is_important("High Priority")
    assert not is_important("Travel")


def ok(lines=()):
    return SimpleNamespace(result="OK", lines=list(lines))


def imap_client_over(imap) -> ImapMailboxClient:
    client = ImapMailboxClient("imap.gmail.com", 993, "me@gmail.com", "secret", timeout=5, verify_ssl=True)
    client._client = imap
    return client


class TestServerErrors:
    """Timeouts and aborts from aioimaplib behave like refused commands."""

    @pytest.fixture
    def imap(self):
        imap = AsyncMock()
        imap.select.return_value = ok([b"* OK [PERMANENTFLAGS (\\Seen \\Flagged \\*)] Limited"])
        imap.create.return_value = ok()
        return imap

    async def test_copy_timeout_falls_back_to_keyword(self, imap):
        async def uid(command, *args):
            if command == "copy":
                raise aioimaplib.CommandTimeout("copy timed out")
            return ok()
        imap.uid.side_effect = uid
        client = imap_client_over(imap)

        result = await adapter_for(client).sync_label(
            gmail_account(), MessageLocator(uid=42, mailbox="Archived"), "Project Alpha", client=client
        )

        assert result.success
        assert result.method == "keyword"
        imap.uid.assert_any_await("store", "42", "+FLAGS", "(Project_Alpha)")

    async def test_aborted_select_reported(self, imap):
        imap.select.side_effect = aioimaplib.Abort("connection lost")
        client = imap_client_over(imap)

        result = await adapter_for(client).sync_label(
            gmail_account(), MessageLocator(uid=42, mailbox="Archived"), "Project Alpha", client=client
        )

        assert not result.success
        assert "connection lost" in result.error
        imap.uid.assert_not_awaited()

    async def test_every_strategy_timing_out(self, imap):
        imap.uid.side_effect = aioimaplib.CommandTimeout("timed out")
        client = imap_client_over(imap)

        result = await adapter_for(client).sync_label(
            gmail_account(), MessageLocator(uid=42, mailbox="Archived"), "Project Alpha", client=client
        )

        assert not result.success
        assert result.method == "keyword"
        assert result.error == UNSUPPORTED_ERROR

    async def test_raw_timeout_from_custom_client(self):
        class HangingClient(FakeImapClient):
            async def select(self, mailbox):
                raise TimeoutError()

        result = await adapter_for(HangingClient()).sync_label(
            gmail_account(), MessageLocator(uid=42, mailbox="Archived"), "Travel"
        )

        assert not result.success
        assert result.error == "TimeoutError"
