"""Tests for security helpers (dockwatch/utils/security.py)."""

import pytest

from dockwatch.exceptions import ValidationError
from dockwatch.utils.security import (
    mask_sensitive,
    mask_webhook_url,
    sanitize_log_message,
    validate_container_id,
    validate_container_name,
)


class TestSanitizeLogMessage:
    """Test suite for sanitize_log_message."""

    def test_removes_newlines(self):
        assert sanitize_log_message("web\nERROR forged line") == "webERROR forged line"

    def test_removes_control_characters(self):
        assert sanitize_log_message("a\x00b\x1bc\x7f") == "abc"

    def test_bytes_and_none(self):
        assert sanitize_log_message(b"caf\xc3\xa9\r\n") == "café"
        assert sanitize_log_message(None) == ""
        assert sanitize_log_message(42) == "42"


class TestMasking:
    """Test suite for mask_sensitive and mask_webhook_url."""

    def test_mask_sensitive(self):
        assert mask_sensitive("sk_live_1234567890abcdef") == "***cdef"
        assert mask_sensitive("abc") == "***"
        assert mask_sensitive(None) == "***"

    def test_mask_webhook_url_keeps_id(self):
        masked = mask_webhook_url("https://discord.com/api/webhooks/123/abcdefgh")

        assert masked == "https://discord.com/api/webhooks/123/***efgh"

    def test_mask_webhook_url_empty(self):
        assert mask_webhook_url("") == "***"


class TestContainerIdentifiers:
    """Test suite for container name and ID validation."""

    def test_full_and_short_ids(self):
        assert validate_container_id("a" * 64) == "a" * 64
        assert validate_container_id("0123456789ab") == "0123456789ab"

    def test_name_accepted_as_id(self):
        assert validate_container_id("/nginx-proxy-manager") == "nginx-proxy-manager"

    @pytest.mark.parametrize("value", ["", "../etc", "web;rm", "bad name", "-leading"])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_container_id(value)

    def test_name_with_dots_and_underscores(self):
        assert validate_container_name("app_1.blue") == "app_1.blue"
