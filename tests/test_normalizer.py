"""Tests for field value normalization and alias resolution."""

from __future__ import annotations

import pytest

from proxydedup.models import Node, ProxyType
from proxydedup.normalizer import (
    FieldType,
    canonical_json,
    get_field,
    normalize_bool,
    normalize_node_fields,
    normalize_number,
    normalize_value,
)


class TestNormalizeValue:
    def test_string_lowercases_and_trims(self):
        assert normalize_value("  AES-128-GCM ") == "aes-128-gcm"

    def test_string_keeps_inner_tabs(self):
        """Tabs are not collapsed to spaces."""
        assert normalize_value("pass\t123") == "pass\t123"
        assert normalize_value("pass\t123") != normalize_value("pass 123")

    def test_secret_is_verbatim(self):
        assert normalize_value(" PassWord ", FieldType.SECRET) == " PassWord "

    def test_none_uses_default(self):
        assert normalize_value(None) == ""
        assert normalize_value(None, FieldType.STRING, "TCP") == "tcp"
        assert normalize_value(None, FieldType.NUMBER) == 0
        assert normalize_value(None, FieldType.BOOLEAN) is False

    @pytest.mark.parametrize("raw, expected", [
        (443, 443),
        ("443", 443),
        (" 8080 ", 8080),
        (443.0, 443),
        ("1.5", 1.5),
        ("abc", 0),
        ([], 0),
        (True, 0),
    ])
    def test_number(self, raw, expected):
        assert normalize_number(raw) == expected

    def test_number_custom_default(self):
        assert normalize_number("not-a-port", default=-1) == -1

    @pytest.mark.parametrize("raw, expected", [
        (True, True),
        (False, False),
        (1, True),
        (0, False),
        ("true", True),
        ("YES", True),
        ("1", True),
        ("false", False),
        ("no", False),
        ("0", False),
        ("", False),
        ("tls", True),
        ([], False),
        ({"a": 1}, True),
    ])
    def test_boolean(self, raw, expected):
        assert normalize_bool(raw) is expected

    def test_domain(self):
        assert normalize_value(" Example.COM. ", FieldType.DOMAIN) == "example.com"

    @pytest.mark.parametrize("raw, expected", [
        ("ws", "/ws"),
        ("/ws/", "/ws"),
        ("//ws", "/ws"),
        ("/", "/"),
        ("", ""),
        ("/a/b/", "/a/b"),
    ])
    def test_path(self, raw, expected):
        assert normalize_value(raw, FieldType.PATH) == expected


class TestAliasResolution:
    def test_first_alias_wins(self):
        record = {"cipher": "aes-256-gcm", "method": "chacha20-ietf-poly1305"}
        assert get_field(record, "encryption") == "chacha20-ietf-poly1305"

    def test_auth_aliases(self):
        assert get_field({"token": "T0k"}, "auth", field_type=FieldType.SECRET) == "T0k"
        assert get_field({"auth": "a", "password": "p"}, "auth", field_type=FieldType.SECRET) == "p"

    def test_server_name_aliases(self):
        assert get_field({"servername": "X.com"}, "server_name", field_type=FieldType.DOMAIN) == "x.com"
        assert get_field({"host": "h.com", "sni": "s.com"}, "server_name", field_type=FieldType.DOMAIN) == "s.com"

    def test_transport_alias_skips_objects(self):
        """A nested transport object is not mistaken for the network name."""
        record = {"transport": {"type": "ws"}, "net": "grpc"}
        assert get_field(record, "transport", "tcp") == "grpc"

    def test_missing_returns_default(self):
        assert get_field({}, "transport", "tcp") == "tcp"

    def test_works_on_node(self):
        node = Node(name="n", proxy_type=ProxyType.SS, server="s", port=1, params={"cipher": "RC4-MD5"})
        assert get_field(node, "encryption") == "rc4-md5"


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        a = {"b": 1, "a": {"y": 2, "x": [3, {"k": 1, "j": 2}]}}
        b = {"a": {"x": [3, {"j": 2, "k": 1}], "y": 2}, "b": 1}
        assert canonical_json(a) == canonical_json(b)

    def test_list_order_matters(self):
        assert canonical_json([1, 2]) != canonical_json([2, 1])

    def test_none_is_empty(self):
        assert canonical_json(None) == ""


class TestNormalizeNodeFields:
    def test_renames_dashed_fields(self):
        record = {"alter-id": "2", "skip-cert-verify": "true", "obfs-password": "x"}
        result = normalize_node_fields(record)
        assert result == {"alterId": 2, "skipCertVerify": True, "obfsPassword": "x"}

    def test_does_not_mutate_input(self):
        record = {"alter-id": "2", "tls": {"enabled": "1"}}
        normalize_node_fields(record)
        assert record == {"alter-id": "2", "tls": {"enabled": "1"}}

    def test_canonical_name_wins_over_alias(self):
        result = normalize_node_fields({"alterId": 1, "alter-id": 9})
        assert result["alterId"] == 1

    def test_nested_objects(self):
        record = {
            "tls": {"enabled": "true", "server_name": " a.com "},
            "reality-opts": {"public-key": "PK", "short-id": "ab"},
            "transport": {"grpc-service-name": "svc"},
        }
        result = normalize_node_fields(record)
        assert result["tls"] == {"enabled": True, "serverName": "a.com"}
        assert result["reality"] == {"publicKey": "PK", "shortId": "ab"}
        assert result["transport"] == {"serviceName": "svc"}
