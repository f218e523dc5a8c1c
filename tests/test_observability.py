"""Tests for the ledger tracing decorator."""

from unittest.mock import patch

import pytest

from library_api.auth import Actor
from library_api.errors import BookUnavailable


@pytest.fixture
def span():
    """Replace Logfire spans with a mock and hand back the span object."""
    with patch("library_api.observability.logfire.span") as mock_span:
        yield mock_span.return_value.__enter__.return_value


def recorded_attributes(span) -> dict:
    return {call.args[0]: call.args[1] for call in span.set_attribute.call_args_list}


class TestTraceLedger:
    def test_positional_arguments_become_span_inputs(self, span, ledger, member_actor, make_book):
        book = make_book()

        ledger.borrow(member_actor, book.id)

        attributes = recorded_attributes(span)
        assert attributes["input.book_id"] == book.id
        assert attributes["ledger.success"] is True
        # Only primitive values are recorded
        assert "input.actor" not in attributes
        assert "input.self" not in attributes

    def test_failures_record_the_error_kind(self, span, ledger, member_actor, make_user, make_book):
        book = make_book(total_copies=1)
        ledger.borrow(Actor.from_user(make_user()), book.id)
        span.reset_mock()

        with pytest.raises(BookUnavailable):
            ledger.borrow(member_actor, book_id=book.id)

        attributes = recorded_attributes(span)
        assert attributes["input.book_id"] == book.id
        assert attributes["ledger.success"] is False
        assert attributes["ledger.error"] == "BookUnavailable"
