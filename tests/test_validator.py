"""Tests for the ordered validation rules."""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from mailgun_emulator.config_loader import LimitsConfig
from mailgun_emulator.models import UploadedFile, collapse_fields
from mailgun_emulator.validator import MessageValidator, parse_delivery_time


def valid_fields(**overrides):
    fields = {"from": "Sender <sender@example.org>", "to": "a@x.org", "subject": "Hi", "text": "Body"}
    fields.update(overrides)
    return fields


@pytest.fixture
def validator():
    return MessageValidator(LimitsConfig(max_recipients=3, max_attachment_size=10))


def test_valid_message(validator):
    assert validator.validate_message(valid_fields()) == (True, None)


@pytest.mark.parametrize("missing", ["from", "to", "subject"])
def test_missing_required_field(validator, missing):
    fields = valid_fields()
    del fields[missing]
    assert validator.validate_message(fields) == (False, f"Missing required field: {missing}")


def test_empty_required_field(validator):
    assert validator.validate_message(valid_fields(subject="")) == (False, "Missing required field: subject")


def test_required_fields_checked_in_order(validator):
    ok, reason = validator.validate_message({"text": "x"})
    assert not ok
    assert reason == "Missing required field: from"


def test_content_required(validator):
    fields = valid_fields()
    del fields["text"]
    assert validator.validate_message(fields) == (
        False,
        "Must provide at least one of: text, html, or template",
    )


def test_empty_text_counts_as_content(validator):
    assert validator.validate_message(valid_fields(text="")) == (True, None)


def test_template_counts_as_content(validator):
    fields = valid_fields(template="welcome")
    del fields["text"]
    assert validator.validate_message(fields)[0] is True


def test_invalid_from(validator):
    ok, reason = validator.validate_message(valid_fields(**{"from": "not-an-email"}))
    assert not ok
    assert reason == "Invalid from email: Invalid email format: not-an-email"


def test_repeated_from_validates_last_value(validator):
    ok, reason = validator.validate_message(valid_fields(**{"from": ["good@x.com", "not-an-email"]}))
    assert reason == "Invalid from email: Invalid email format: not-an-email"
    assert validator.validate_message(valid_fields(**{"from": ["bad", "good@x.com"]})) == (True, None)


def test_invalid_to_reports_first_bad_address(validator):
    ok, reason = validator.validate_message(valid_fields(to="a@x.org, broken@, c@z"))
    assert reason == "Invalid to email: Invalid email format: broken@"


def test_invalid_cc_and_bcc(validator):
    assert validator.validate_message(valid_fields(cc="nope"))[1] == "Invalid cc email: Invalid email format: nope"
    assert validator.validate_message(valid_fields(bcc="x y@z.org"))[1].startswith("Invalid bcc email")


def test_list_to_is_accepted(validator):
    assert validator.validate_message(valid_fields(to=["a@x.org", "B <b@y.org>"])) == (True, None)


def test_too_many_recipients(validator):
    ok, reason = validator.validate_message(valid_fields(to="a@x.org,b@x.org", cc="c@x.org", bcc="d@x.org"))
    assert not ok
    assert reason == "Too many recipients. Maximum allowed: 3"


def test_empty_segments_do_not_count(validator):
    assert validator.validate_message(valid_fields(to="a@x.org,,b@x.org, ", cc="c@x.org"))[0] is True


class TestDeliveryTime:
    def test_future_rfc2822_accepted(self, validator):
        when = format_datetime(datetime.now(timezone.utc) + timedelta(days=1))
        assert validator.validate_message(valid_fields(**{"o:deliverytime": when})) == (True, None)

    def test_unparseable(self, validator):
        ok, reason = validator.validate_message(valid_fields(**{"o:deliverytime": "next tuesday"}))
        assert reason == "Invalid delivery time: Invalid date format. Use RFC-2822 format."

    def test_repeated_value_validates_last_one(self, validator):
        when = format_datetime(datetime.now(timezone.utc) + timedelta(days=1))
        ok, reason = validator.validate_message(valid_fields(**{"o:deliverytime": [when, "next tuesday"]}))
        assert reason == "Invalid delivery time: Invalid date format. Use RFC-2822 format."
        assert validator.validate_message(valid_fields(**{"o:deliverytime": ["next tuesday", when]})) == (True, None)

    def test_past(self, validator):
        now = datetime(2025, 1, 10, tzinfo=timezone.utc)
        ok, reason = validator.validate_delivery_time("Thu, 09 Jan 2025 10:00:00 +0000", now=now)
        assert (ok, reason) == (False, "Delivery time must be in the future")

    def test_more_than_seven_days(self, validator):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        ok, reason = validator.validate_delivery_time("Thu, 09 Jan 2025 00:00:01 +0000", now=now)
        assert (ok, reason) == (False, "Delivery time cannot be more than 7 days in the future")

    def test_iso_fallback(self, validator):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert validator.validate_delivery_time("2025-01-02T12:00:00Z", now=now) == (True, None)

    def test_parse_naive_is_utc(self):
        assert parse_delivery_time("2025-01-02T12:00:00").tzinfo == timezone.utc
        assert parse_delivery_time("") is None


class TestTags:
    def test_valid_tags(self, validator):
        assert validator.validate_message(valid_fields(**{"o:tag": "news,promo_1"})) == (True, None)
        assert validator.validate_message(valid_fields(**{"o:tag": ["news", "weekly-digest"]})) == (True, None)

    def test_invalid_tag_format(self, validator):
        ok, reason = validator.validate_message(valid_fields(**{"o:tag": "ok,bad tag!"}))
        assert reason == (
            "Invalid tags: Invalid tag format: bad tag!. "
            "Use only alphanumeric characters, hyphens, and underscores."
        )

    def test_tag_too_long(self, validator):
        tag = "a" * 129
        ok, reason = validator.validate_tags(tag)
        assert (ok, reason) == (False, f"Tag too long: {tag}. Maximum length is 128 characters.")


def test_validate_attachments():
    validator = MessageValidator()
    small = UploadedFile(filename="a.txt", content=b"x" * 10)
    assert validator.validate_attachments([small]) == (True, None)

    tight = MessageValidator(LimitsConfig(max_attachment_size=15))
    assert tight.validate_attachments([small, small]) == (
        False,
        f"Total attachment size exceeds limit of {15 / (1024 * 1024):g}MB",
    )


def test_default_attachment_limit_message():
    validator = MessageValidator(LimitsConfig(max_attachment_size=25 * 1024 * 1024))
    big = UploadedFile(filename="big.bin", content=b"0" * (25 * 1024 * 1024 + 1))
    assert validator.validate_attachments([big]) == (False, "Total attachment size exceeds limit of 25MB")


def test_validate_message_size():
    validator = MessageValidator(LimitsConfig(max_message_size=2 * 1024 * 1024))
    assert validator.validate_message_size(100) == (True, None)
    assert validator.validate_message_size(3 * 1024 * 1024) == (False, "Message size exceeds limit of 2MB")


def test_collapse_fields_keeps_recipient_lists():
    collapsed = collapse_fields(
        {
            "from": ["a@x.org", "b@x.org"],
            "to": ["r1@x.org", "r2@x.org"],
            "o:tag": ["one", "two"],
            "h:X-Id": ("1", "2"),
            "subject": "Hi",
        }
    )
    assert collapsed == {
        "from": "b@x.org",
        "to": ["r1@x.org", "r2@x.org"],
        "o:tag": ["one", "two"],
        "h:X-Id": "2",
        "subject": "Hi",
    }
