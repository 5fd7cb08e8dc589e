"""Tests for redirect URI classification and matching."""

import pytest

from mcp_oauth_broker.utils.redirects import (
    ClientDialect,
    append_query_params,
    classify_redirect,
    is_allowed_redirect_uri,
    is_loopback_uri,
    is_redirectable,
    normalize_redirect_uri,
    redirect_uris_match,
    strip_query_and_fragment,
)


class TestClassifyRedirect:
    """Tests for classify_redirect."""

    @pytest.mark.parametrize(
        "uri,expected",
        [
            ("http://127.0.0.1:3334/oauth/callback", ClientDialect.LOOPBACK),
            ("http://localhost:3334/oauth/callback", ClientDialect.LOOPBACK),
            ("http://127.0.0.1:33418/", ClientDialect.LOOPBACK),
            ("http://localhost:33418", ClientDialect.LOOPBACK),
            ("vscode://ms-vscode.vscode-mcp/callback", ClientDialect.CUSTOM_SCHEME),
            ("vscode-insiders://ms-vscode.vscode-mcp/callback", ClientDialect.CUSTOM_SCHEME),
            ("https://vscode.dev/redirect", ClientDialect.WEB),
            ("https://insiders.vscode.dev/redirect", ClientDialect.WEB),
            ("https://evil.example.com/", ClientDialect.UNSUPPORTED),
            ("http://127.0.0.1:3334/other", ClientDialect.UNSUPPORTED),
        ],
    )
    def test_known_dialects(self, uri, expected):
        assert classify_redirect(uri) == expected

    def test_callback_path_wins_over_host(self):
        """The /oauth/callback rule is checked before the web host rule."""
        assert classify_redirect("https://vscode.dev/oauth/callback") == ClientDialect.LOOPBACK

    @pytest.mark.parametrize(
        "uri",
        [None, "", "not a uri", "http://127.0.0.1:notaport/", "://missing-scheme"],
    )
    def test_garbage_is_unsupported(self, uri):
        assert classify_redirect(uri) == ClientDialect.UNSUPPORTED

    def test_classification_is_deterministic(self):
        uri = "vscode://ms-vscode.vscode-mcp/callback"
        assert len({classify_redirect(uri) for _ in range(10)}) == 1


class TestIsAllowedRedirectUri:
    """Tests for the authorization endpoint allow-list."""

    @pytest.mark.parametrize(
        "uri",
        [
            "http://127.0.0.1:3334/oauth/callback",
            "http://localhost:33418/",
            "http://127.0.0.1:51234/",
            "http://localhost:8080",
            "http://localhost:9999/oauth/callback",
            "vscode://ms-vscode.vscode-mcp/callback",
            "vscode-insiders://ms-vscode.vscode-mcp/callback",
        ],
    )
    def test_allowed(self, uri):
        assert is_allowed_redirect_uri(uri)

    @pytest.mark.parametrize(
        "uri",
        [
            None,
            "",
            "https://evil.example.com/callback",
            "http://127.0.0.1:3334/elsewhere",
            "https://127.0.0.1:3334/oauth/callback",
            "http://127.0.0.1.evil.com:3334/",
        ],
    )
    def test_rejected(self, uri):
        assert not is_allowed_redirect_uri(uri)


class TestNormalizeRedirectUri:
    """Tests for redirect URI comparison at the token endpoint."""

    @pytest.mark.parametrize(
        "stored,presented",
        [
            ("http://127.0.0.1:3334/oauth/callback", "http://localhost:3334/oauth/callback"),
            ("http://localhost:33418/", "http://localhost:33418"),
            ("vscode://MS-VSCODE.vscode-mcp/callback", "vscode://ms-vscode.vscode-mcp/callback"),
        ],
    )
    def test_equivalent(self, stored, presented):
        assert redirect_uris_match(stored, presented)

    @pytest.mark.parametrize(
        "stored,presented",
        [
            ("http://localhost:3334/oauth/callback", "http://localhost:3335/oauth/callback"),
            ("http://localhost:33418/", "http://localhost:33418/other"),
        ],
    )
    def test_different(self, stored, presented):
        assert not redirect_uris_match(stored, presented)

    def test_normalization_is_idempotent(self):
        once = normalize_redirect_uri("http://127.0.0.1:3334/")
        assert normalize_redirect_uri(once) == once


class TestUriHelpers:
    """Tests for the small URI helpers."""

    def test_append_query_params_keeps_existing_query(self):
        uri = append_query_params("http://localhost:3334/cb?x=1#frag", {"code": "abc"})
        assert uri == "http://localhost:3334/cb?x=1&code=abc"

    def test_append_query_params_escapes_values(self):
        uri = append_query_params("vscode://ext/cb", {"state": "a b&c"})
        assert uri == "vscode://ext/cb?state=a+b%26c"

    def test_strip_query_and_fragment(self):
        assert strip_query_and_fragment("http://localhost:1/cb?a=1#b") == "http://localhost:1/cb"

    def test_is_loopback_uri(self):
        assert is_loopback_uri("http://localhost:4000/")
        assert is_loopback_uri("http://127.0.0.1:4000/oauth/callback")
        assert not is_loopback_uri("https://localhost:4000/")
        assert not is_loopback_uri("http://example.com/")

    def test_is_redirectable(self):
        assert is_redirectable("https://example.com/cb")
        assert is_redirectable("vscode://ext/cb")
        assert not is_redirectable("no-scheme")
        assert not is_redirectable("http://host:bad/")
