"""Tests for RouterOS wire translation."""

import pytest

from pppoe_manager.domain import AccountStatus, RateLimit
from pppoe_manager.services.routeros_commands import (
    add_secret_payload,
    format_rate_limit,
    parse_identity,
    parse_secret,
    parse_secrets,
    set_disabled_payload,
    set_password_payload,
    to_wire_bool,
    wire_disabled,
    wire_flag,
)


class TestWireBooleans:
    @pytest.mark.parametrize("raw", ["true", "yes", "TRUE", " Yes "])
    def test_disabled_true_spellings(self, raw):
        assert wire_disabled(raw) is True

    @pytest.mark.parametrize("raw", ["false", "no", "False", " NO "])
    def test_disabled_false_spellings(self, raw):
        assert wire_disabled(raw) is False

    @pytest.mark.parametrize("raw", [None, "", "maybe", "1"])
    def test_unknown_value_reads_as_disabled(self, raw):
        assert wire_disabled(raw) is True

    def test_strict_flag_returns_none_for_garbage(self):
        assert wire_flag("yes") is True
        assert wire_flag("no") is False
        assert wire_flag("enabled") is None

    def test_outgoing_flag_uses_yes_no(self):
        assert to_wire_bool(True) == "yes"
        assert to_wire_bool(False) == "no"


class TestParseSecret:
    def test_full_row(self):
        row = {
            ".id": "*1A",
            "name": "bob",
            "password": "b0b",
            "service": "pppoe",
            "profile": "default",
            "caller-id": "AA:BB",
            "disabled": "false",
            "comment": "flat 4",
        }
        account = parse_secret(row)

        assert account.secret_id == "*1A"
        assert account.name == "bob"
        assert account.caller_id == "AA:BB"
        assert account.disabled is False
        assert account.status == AccountStatus.ACTIVE

    def test_plain_id_key(self):
        assert parse_secret({"id": "*2", "name": "x", "disabled": "no"}).secret_id == "*2"

    def test_missing_optional_fields_default_empty(self):
        account = parse_secret({"name": "carol", "disabled": "true"})

        assert account.password == ""
        assert account.comment == ""
        assert account.secret_id is None
        assert account.status == AccountStatus.DISABLED

    def test_listing_skips_nameless_rows(self):
        rows = [{"name": "a", "disabled": "no"}, {"name": "", "disabled": "no"}, "junk"]
        assert [a.name for a in parse_secrets(rows)] == ["a"]

    def test_listing_of_none_is_empty(self):
        assert parse_secrets(None) == []


class TestParseIdentity:
    def test_reads_name(self):
        assert parse_identity([{"name": "core-1"}]) == "core-1"

    def test_unknown_when_empty(self):
        assert parse_identity([]) == "Unknown"


class TestPayloads:
    def test_rate_limit_is_upload_then_download(self):
        assert format_rate_limit(RateLimit(download_kbps=10240, upload_kbps=2048)) == "2048k/10240k"

    def test_add_with_rate_limit(self):
        payload = add_secret_payload("bob", "pw", RateLimit(download_kbps=4096, upload_kbps=1024))

        assert payload["service"] == "pppoe"
        assert payload["limit-at"] == "1024k/4096k"
        assert payload["max-limit"] == "1024k/4096k"
        assert "profile" not in payload

    def test_add_without_rate_limit_uses_default_profile(self):
        payload = add_secret_payload("bob", "pw")

        assert payload == {"name": "bob", "password": "pw", "service": "pppoe", "profile": "default"}

    def test_set_payloads(self):
        assert set_disabled_payload("*1", True) == {"id": "*1", "disabled": "yes"}
        assert set_disabled_payload("*1", False) == {"id": "*1", "disabled": "no"}
        assert set_password_payload("*1", "new") == {"id": "*1", "password": "new"}

    def test_rate_limit_rejects_non_positive(self):
        with pytest.raises(ValueError):
            RateLimit(download_kbps=0, upload_kbps=1024)
