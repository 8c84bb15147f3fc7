"""Argument validation happens before any storage work."""

import pytest

from mcp_mailbox.addressing import GlobalScope, ProjectScope, QueueAddress
from mcp_mailbox.errors import InvalidArgumentError
from mcp_mailbox.requests import (
    ANONYMOUS_AGENT,
    ContextKeyRequest,
    ContextListRequest,
    ContextSetRequest,
    DeleteMessageRequest,
    FetchMessagesRequest,
    SendMessageRequest,
    parse_limit,
    parse_message_id,
)


class TestContextRequests:
    def test_set_without_project_is_global(self):
        request = ContextSetRequest.parse("k", "v")
        assert request.scope == GlobalScope()
        assert request.key == "k"
        assert request.value == "v"

    def test_set_with_project(self):
        request = ContextSetRequest.parse("k", "v", "a/b")
        assert request.scope == ProjectScope("a/b")

    def test_empty_value_is_allowed(self):
        assert ContextSetRequest.parse("k", "").value == ""

    def test_non_string_value_rejected(self):
        with pytest.raises(InvalidArgumentError) as excinfo:
            ContextSetRequest.parse("k", 42)
        assert excinfo.value.field == "value"

    @pytest.mark.parametrize("key", ["", "   ", None, 7])
    def test_bad_key_rejected(self, key):
        with pytest.raises(InvalidArgumentError) as excinfo:
            ContextKeyRequest.parse(key)
        assert excinfo.value.field == "key"

    def test_empty_project_is_not_global(self):
        with pytest.raises(InvalidArgumentError) as excinfo:
            ContextListRequest.parse("")
        assert excinfo.value.field == "project_id"

    def test_key_is_not_trimmed(self):
        assert ContextKeyRequest.parse(" k ").key == " k "


class TestSendMessageRequest:
    def test_defaults(self):
        request = SendMessageRequest.parse("a/b", "X", "hi")
        assert request.queue == QueueAddress("a/b", "X")
        assert request.from_agent == ANONYMOUS_AGENT
        assert request.reference_id is None

    @pytest.mark.parametrize("sender", [None, "", "  "])
    def test_blank_sender_becomes_anonymous(self, sender):
        assert SendMessageRequest.parse("a/b", "X", "hi", sender).from_agent == ANONYMOUS_AGENT

    def test_content_kept_verbatim(self):
        content = "  line one\n\tline two ☃ \U0001f600  "
        assert SendMessageRequest.parse("a/b", "X", content).content == content

    def test_empty_content_allowed(self):
        assert SendMessageRequest.parse("a/b", "X", "").content == ""

    @pytest.mark.parametrize(
        "args, field",
        [
            (("", "X", "hi"), "project_id"),
            (("a/b", " ", "hi"), "to_agent"),
            (("a/b", "X", None), "content"),
            ((None, "X", "hi"), "project_id"),
        ],
    )
    def test_invalid_fields(self, args, field):
        with pytest.raises(InvalidArgumentError) as excinfo:
            SendMessageRequest.parse(*args)
        assert excinfo.value.field == field

    def test_reference_must_be_string(self):
        with pytest.raises(InvalidArgumentError):
            SendMessageRequest.parse("a/b", "X", "hi", "Y", 12)


class TestLimitsAndIds:
    def test_limit_none_means_unbounded(self):
        assert parse_limit(None) is None

    def test_limit_zero_is_valid(self):
        assert parse_limit(0) == 0

    @pytest.mark.parametrize("limit", [-1, True, 1.5, "3"])
    def test_bad_limit(self, limit):
        with pytest.raises(InvalidArgumentError) as excinfo:
            parse_limit(limit)
        assert excinfo.value.field == "limit"

    def test_fetch_request(self):
        request = FetchMessagesRequest.parse("a/b", "X", 5)
        assert request.queue == QueueAddress("a/b", "X")
        assert request.limit == 5

    @pytest.mark.parametrize("raw, expected", [("1", 1), ("0042", 42), (7, 7)])
    def test_message_id_accepts_digits(self, raw, expected):
        assert parse_message_id(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "-1", "0", "1.5", "١", 0, -3, True, None])
    def test_message_id_rejects_garbage(self, raw):
        with pytest.raises(InvalidArgumentError) as excinfo:
            DeleteMessageRequest.parse(raw)
        assert excinfo.value.field == "message_id"

    def test_limit_beyond_sqlite_range_is_unbounded(self):
        assert parse_limit(2**63 - 1) == 2**63 - 1
        assert parse_limit(2**63) is None
        assert FetchMessagesRequest.parse("a/b", "X", 10**30).limit is None

    @pytest.mark.parametrize("raw", [2**63, "9223372036854775808", "99999999999999999999", "9" * 5000])
    def test_message_id_beyond_sqlite_range(self, raw):
        with pytest.raises(InvalidArgumentError) as excinfo:
            DeleteMessageRequest.parse(raw)
        assert excinfo.value.field == "message_id"

    def test_largest_message_id_accepted(self):
        assert parse_message_id("9223372036854775807") == 2**63 - 1


class TestTextEncoding:
    @pytest.mark.parametrize(
        "parse, field",
        [
            (lambda: SendMessageRequest.parse("a/b", "X", "\ud800"), "content"),
            (lambda: SendMessageRequest.parse("a/b\udfff", "X", "hi"), "project_id"),
            (lambda: SendMessageRequest.parse("a/b", "X\ud800", "hi"), "to_agent"),
            (lambda: SendMessageRequest.parse("a/b", "X", "hi", "Y\ud800"), "from_agent"),
            (lambda: SendMessageRequest.parse("a/b", "X", "hi", "Y", "\ud800"), "reference_id"),
            (lambda: ContextSetRequest.parse("k\ud800", "v"), "key"),
            (lambda: ContextSetRequest.parse("k", "v\ud800"), "value"),
            (lambda: ContextKeyRequest.parse("k", "p\ud800"), "project_id"),
            (lambda: FetchMessagesRequest.parse("a/b", "X\udc80"), "agent_id"),
        ],
    )
    def test_lone_surrogates_rejected(self, parse, field):
        with pytest.raises(InvalidArgumentError) as excinfo:
            parse()
        assert excinfo.value.field == field

    def test_non_ascii_text_accepted(self):
        request = SendMessageRequest.parse("proj/ü", "Zoë", "héllo 👋", "Ünal")
        assert request.content == "héllo 👋"
        assert request.from_agent == "Ünal"
