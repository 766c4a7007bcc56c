import pytest

from bulk_mail_service.models import (
    JobStatus,
    PermanentFailure,
    Recipient,
    RecipientAction,
    SendResult,
    Sent,
    TransientFailure,
    decide_recipient,
    dedupe_recipients,
    normalise_priority,
    outcome_from_result,
)


def test_sent_outcome_is_marked_sent_with_unchanged_retry_count():
    decision = decide_recipient(Sent("<id@example.com>"), retry_count=2, max_retries=3)
    assert decision.action == RecipientAction.MARK_SENT
    assert decision.retry_count == 2
    assert decision.error is None


def test_transient_failure_retries_until_ceiling():
    first = decide_recipient(TransientFailure("timeout"), retry_count=0, max_retries=3)
    assert first.action == RecipientAction.RETRY
    assert first.retry_count == 1

    second = decide_recipient(TransientFailure("timeout"), retry_count=1, max_retries=3)
    assert second.action == RecipientAction.RETRY
    assert second.retry_count == 2

    last = decide_recipient(TransientFailure("timeout"), retry_count=2, max_retries=3)
    assert last.action == RecipientAction.MARK_FAILED
    assert last.retry_count == 3
    assert last.error == "Max retries (3) exceeded: timeout"


def test_permanent_failure_fails_immediately():
    decision = decide_recipient(PermanentFailure("550 user unknown"), retry_count=0, max_retries=5)
    assert decision.action == RecipientAction.MARK_FAILED
    assert decision.retry_count == 1
    assert decision.error == "550 user unknown"


def test_outcome_from_result_uses_retryable_flag():
    assert outcome_from_result(SendResult(success=True, message_id="m1")) == Sent("m1")
    assert outcome_from_result(SendResult(success=False, error="busy")) == TransientFailure("busy")
    assert outcome_from_result(SendResult(success=False, error="bounce", retryable=False)) == PermanentFailure("bounce")
    assert outcome_from_result(SendResult(success=False)) == TransientFailure("Unknown error")


def test_recipient_from_value_validates():
    recipient = Recipient.from_value({"id": 7, "email": " ada@example.com ", "name": "Ada"})
    assert recipient == Recipient(id="7", email="ada@example.com", name="Ada")

    with pytest.raises(ValueError):
        Recipient.from_value({"id": "1"})
    with pytest.raises(ValueError):
        Recipient.from_value({"id": "1", "email": "not-an-address"})
    with pytest.raises(ValueError):
        Recipient.from_value("ada@example.com")


def test_dedupe_keeps_first_occurrence():
    recipients = [
        Recipient("1", "a@example.com"),
        Recipient("2", "b@example.com"),
        Recipient("1", "other@example.com"),
        Recipient("3", "A@example.com"),
        Recipient("4", "d@example.com"),
    ]
    assert [r.id for r in dedupe_recipients(recipients)] == ["1", "2", "4"]


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, 0),
        (2, 2),
        ("3", 3),
        ("high", 1),
        (" LOW ", 3),
        (-4, 0),
        ("urgent", 0),
        (True, 0),
    ],
)
def test_normalise_priority(value, expected):
    assert normalise_priority(value) == expected


def test_normalise_priority_falls_back_to_default():
    assert normalise_priority(None, default=2) == 2
    assert normalise_priority("bogus", default=3) == 3


def test_terminal_statuses():
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.CANCELLED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal
    assert not JobStatus.SCHEDULED.is_terminal
