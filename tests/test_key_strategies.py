"""Unit tests for rate-limit key strategies."""

import logging
import time

import pytest
from jose import jwt

from admission.core.errors import KeyDerivationError
from admission.core.key_strategies import (
    custom_key_strategy,
    decode_user_id,
    extract_bearer_token,
    get_client_ip,
    ip_and_path_key_strategy,
    ip_key_strategy,
    user_key_strategy,
)

SECRET = "unit-test-secret"


def _token(claims: dict, secret: str = SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


class TestClientIp:
    """Test caller address resolution."""

    def test_uses_first_forwarded_address(self, make_request) -> None:
        request = make_request({"x-forwarded-for": " 203.0.113.7 , 10.0.0.1"})
        assert get_client_ip(request) == "203.0.113.7"

    def test_falls_back_to_peer_address(self, make_request) -> None:
        request = make_request(client=("192.0.2.10", 4000))
        assert get_client_ip(request) == "192.0.2.10"

    def test_unknown_when_no_address(self, make_request) -> None:
        request = make_request(client=None)
        assert get_client_ip(request) == "unknown"

    def test_forwarded_header_ignored_when_untrusted(self, make_request) -> None:
        request = make_request({"x-forwarded-for": "203.0.113.7"}, client=("192.0.2.10", 1))
        assert get_client_ip(request, trust_forwarded_for=False) == "192.0.2.10"

    def test_ip_strategy_scope(self, make_request) -> None:
        strategy = ip_key_strategy()
        assert strategy(make_request({"x-forwarded-for": "198.51.100.1"})) == "ip:198.51.100.1"


class TestBearerToken:
    """Test credential extraction."""

    def test_reads_authorization_header(self, make_request) -> None:
        request = make_request({"authorization": "Bearer abc.def.ghi"})
        assert extract_bearer_token(request) == "abc.def.ghi"

    def test_reads_token_cookie(self, make_request) -> None:
        request = make_request({"cookie": "token=cookie-token; theme=dark"})
        assert extract_bearer_token(request) == "cookie-token"

    def test_ignores_non_bearer_scheme(self, make_request) -> None:
        request = make_request({"authorization": "Basic dXNlcjpwYXNz"})
        assert extract_bearer_token(request) is None


class TestDecodeUserId:
    """Test JWT verification and claim selection."""

    def test_prefers_user_id_claim(self) -> None:
        token = _token({"userId": 42, "sub": "ignored"})
        assert decode_user_id(token, secret=SECRET, algorithms=["HS256"]) == "42"

    def test_falls_back_to_sub(self) -> None:
        token = _token({"sub": "user-7"})
        assert decode_user_id(token, secret=SECRET, algorithms=["HS256"]) == "user-7"

    def test_rejects_bad_signature(self) -> None:
        token = _token({"userId": 1}, secret="other-secret")
        with pytest.raises(KeyDerivationError) as exc_info:
            decode_user_id(token, secret=SECRET, algorithms=["HS256"])
        assert exc_info.value.code == "invalid_token"

    def test_rejects_expired_token(self) -> None:
        token = _token({"userId": 1, "exp": int(time.time()) - 60})
        with pytest.raises(KeyDerivationError):
            decode_user_id(token, secret=SECRET, algorithms=["HS256"])

    def test_requires_secret(self) -> None:
        with pytest.raises(KeyDerivationError) as exc_info:
            decode_user_id(_token({"userId": 1}), secret=None, algorithms=["HS256"])
        assert exc_info.value.code == "jwt_secret_not_configured"

    def test_requires_user_claim(self) -> None:
        with pytest.raises(KeyDerivationError) as exc_info:
            decode_user_id(_token({"role": "patient"}), secret=SECRET, algorithms=["HS256"])
        assert exc_info.value.code == "missing_user_claim"


class TestUserStrategy:
    """Test the user-scoped key strategy."""

    def test_distinct_users_get_distinct_scopes(self, make_request) -> None:
        strategy = user_key_strategy(secret=SECRET)
        alice = make_request({"authorization": f"Bearer {_token({'userId': 1})}"})
        bob = make_request({"authorization": f"Bearer {_token({'userId': 2})}"})

        assert strategy(alice) == "user:1"
        assert strategy(bob) == "user:2"

    def test_missing_credential_is_anonymous(self, make_request, caplog) -> None:
        strategy = user_key_strategy(secret=SECRET)

        with caplog.at_level(logging.WARNING):
            assert strategy(make_request()) == "user:anonymous"

        assert not [r for r in caplog.records if r.getMessage() == "key_strategy.decode_failed"]

    def test_malformed_credential_falls_back_with_warning(self, make_request, caplog) -> None:
        strategy = user_key_strategy(secret=SECRET)
        request = make_request({"authorization": "Bearer not-a-jwt"})

        with caplog.at_level(logging.WARNING):
            assert strategy(request) == "user:anonymous"

        records = [r for r in caplog.records if r.getMessage() == "key_strategy.decode_failed"]
        assert len(records) == 1
        assert records[0].reason == "invalid_token"


class TestCustomStrategies:
    """Test caller-supplied and composite strategies."""

    def test_custom_strategy_passes_through(self, make_request) -> None:
        strategy = custom_key_strategy(lambda request: f"tenant:{request.headers['x-tenant']}")
        assert strategy(make_request({"x-tenant": "acme"})) == "tenant:acme"

    def test_custom_strategy_rejects_empty_key(self, make_request) -> None:
        strategy = custom_key_strategy(lambda request: "")
        with pytest.raises(KeyDerivationError):
            strategy(make_request())

    def test_ip_and_path_strategy(self, make_request) -> None:
        strategy = ip_and_path_key_strategy()
        request = make_request(client=("192.0.2.1", 1), path="/v1/bookings")
        assert strategy(request) == "ip:192.0.2.1:path:/v1/bookings"
