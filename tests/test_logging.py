"""Tests for client-message scrubbing and attribute sanitizing."""

import pytest

from descgate.logging import (
    GENERIC_ERROR_MESSAGE,
    MAX_CLIENT_MESSAGE_LENGTH,
    UNAVAILABLE_MESSAGE,
    sanitize_attributes,
    sanitize_error_message,
)


class TestSanitizeErrorMessage:
    @pytest.mark.parametrize(
        "message,expected,leaked",
        [
            ("cannot open /etc/passwd", "cannot open [PATH]", "/etc"),
            ("failed reading /srv/app/main.py", "failed reading [PATH]", "main.py"),
            ("refused by db.internal:5432", "refused by [HOST]", "5432"),
            ("peer 10.1.2.3 reset", "peer [IP] reset", "10.1.2.3"),
            ("owner a@b.com not found", "owner [EMAIL] not found", "a@b.com"),
            ("missing $SECRET", "missing [ENV]", "SECRET"),
            ("pydantic.fields failed", "[MODULE] failed", "pydantic"),
        ],
    )
    def test_scrubs_sensitive_fragments(self, message, expected, leaked):
        result = sanitize_error_message(message)

        assert result == expected
        assert leaked not in result

    def test_database_name_collapses(self):
        result = sanitize_error_message("redis timed out")

        assert result == GENERIC_ERROR_MESSAGE
        assert "redis" not in result.lower()

    @pytest.mark.parametrize(
        "message",
        [
            "invalid password supplied",
            "token rejected",
            'File "/app/server.py", line 12',
            "connection reset",
        ],
    )
    def test_keyword_collapses_to_generic(self, message):
        assert sanitize_error_message(message) == GENERIC_ERROR_MESSAGE

    def test_length_cap(self):
        at_cap = "x" * MAX_CLIENT_MESSAGE_LENGTH

        assert sanitize_error_message(at_cap) == at_cap
        assert sanitize_error_message(at_cap + "x") == GENERIC_ERROR_MESSAGE

    @pytest.mark.parametrize("message", [None, "", 42])
    def test_empty_or_non_string(self, message):
        assert sanitize_error_message(message) == UNAVAILABLE_MESSAGE

    def test_public_wording_survives(self):
        message = "Invalid barcode format. Must be 8, 12, or 13 digit UPC/EAN code."

        assert sanitize_error_message(message) == message


class TestSanitizeAttributes:
    def test_drops_sensitive_keys_recursively(self):
        data = {
            "user": {
                "password": "p",
                "name": "n",
                "items": [{"api_key": "k", "ok": 1}, ("a", "b")],
            },
            "session_token": "t",
            "X-Refresh-Token": "r",
        }

        assert sanitize_attributes(data) == {
            "user": {"name": "n", "items": [{"ok": 1}, ["a", "b"]]},
        }

    def test_depth_limit(self):
        nested = "leaf"
        for _ in range(3):
            nested = {"n": nested}

        assert sanitize_attributes(nested, max_depth=1) == {"n": {"n": "[max depth exceeded]"}}

    def test_long_strings_truncated(self):
        result = sanitize_attributes({"note": "y" * 1500})["note"]

        assert len(result) == 1003
        assert result.endswith("...")
