"""Tests for the API client's credential resolution and 401 handling."""

import asyncio
import json

import httpx
import pytest

from maak.client.api import ApiClient, is_demo_token
from maak.client.errors import (
    AuthenticationFailed,
    CircuitOpenError,
    ConnectionFailed,
    RequestRejected,
    RequestTimedOut,
    ServerFailure,
    TokenUnavailable,
)
from maak.client.recovery import TokenRecovery
from maak.client.retry import DATA_RETRY_OPTIONS, CircuitBreaker, CircuitState
from maak.client.storage import MemorySessionStore
from maak.service.demo import build_demo_user
from maak.service.errors import CredentialFailure
from maak.storage.models import ProviderSession, StoredSession, TokenFreeSession, User

HOUR_MS = 3_600_000
NOW_MS = 1_760_000_000_000
ANON_KEY = "anon-test"


class Recorder:
    """MockTransport handler that records requests and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            status, body = self.responses.pop(0)
        elif self.responses:
            status, body = self.responses[0]
        else:
            status, body = 200, {"ok": True}
        return httpx.Response(status, json=body)

    @property
    def authorizations(self):
        return [request.headers.get("authorization") for request in self.requests]


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class StaticProvider:
    def __init__(self, token):
        self.token = token
        self.calls = 0

    async def get_session(self):
        self.calls += 1
        if self.token is None:
            return None
        return ProviderSession(
            access_token=self.token,
            refresh_token="refresh",
            expires_at=NOW_MS // 1000 + 3600,
            user=User(id="user-1", email="anna@example.se"),
        )


def _demo_token(age_hours):
    return f"demo-token-{int(NOW_MS - age_hours * HOUR_MS)}"


def _backup(token):
    timestamp = int(token.rsplit("-", 1)[1])
    session = StoredSession(
        access_token=token,
        refresh_token=f"demo-refresh-{timestamp}",
        expires_at=timestamp // 1000 + 86400,
        user=build_demo_user(timestamp),
    )
    return MemorySessionStore(session.to_json())


def _client(handler, **kwargs):
    kwargs.setdefault("sleep", FakeSleep())
    return ApiClient(
        "http://testserver/v1",
        anon_key=ANON_KEY,
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW_MS,
        **kwargs,
    )


class TestCredentialResolution:
    async def test_token_free_session_sends_session_headers_and_anon_key(self):
        recorder = Recorder()
        api = _client(recorder)
        api.use_token_free_session(TokenFreeSession(session_id="s-1", user_id="demo-user-1", is_demo=True))

        await api.get_profile()

        sent = recorder.requests[0].headers
        assert sent["authorization"] == f"Bearer {ANON_KEY}"
        assert sent["x-session-id"] == "s-1"
        assert sent["x-user-id"] == "demo-user-1"
        assert sent["x-is-demo"] == "true"
        await api.close()

    async def test_in_memory_token_wins_over_token_free_session(self):
        recorder = Recorder()
        api = _client(recorder)
        api.use_token_free_session(TokenFreeSession(session_id="s-1", user_id="demo-user-1", is_demo=True))
        api.set_access_token("real-token")

        await api.get_profile()

        sent = recorder.requests[0].headers
        assert sent["authorization"] == "Bearer real-token"
        assert "x-session-id" not in sent
        assert "x-user-id" not in sent
        await api.close()

    async def test_token_alongside_token_free_session_still_recovers_on_401(self):
        recorder = Recorder((401, {"error": "no", "code": "unknown_user"}), (200, {"ok": True}))
        api = _client(recorder)
        provider = StaticProvider("fresh-provider-token")
        api.session_provider = provider
        api.use_token_free_session(TokenFreeSession(session_id="s-1", user_id="user-1"))
        api.set_access_token("stale-provider-token")

        await api.get_profile()

        assert provider.calls == 1
        assert recorder.authorizations == ["Bearer stale-provider-token", "Bearer fresh-provider-token"]
        await api.close()

    async def test_token_used_when_present(self):
        recorder = Recorder()
        api = _client(recorder)
        api.set_access_token("real-token")

        await api.get_matches()

        assert recorder.authorizations == ["Bearer real-token"]
        assert recorder.requests[0].url.path == "/v1/matches"
        await api.close()

    async def test_open_endpoint_uses_anon_key(self):
        recorder = Recorder((200, {"session": {}}))
        api = _client(recorder)

        await api.login("anna@example.se", "hemligt1")

        assert recorder.authorizations == [f"Bearer {ANON_KEY}"]
        assert json.loads(recorder.requests[0].content) == {
            "email": "anna@example.se",
            "password": "hemligt1",
        }
        await api.close()

    async def test_protected_endpoint_without_token_fails_before_sending(self):
        recorder = Recorder()
        api = _client(recorder)

        with pytest.raises(TokenUnavailable) as exc_info:
            await api.get_profile()

        assert exc_info.value.kind == CredentialFailure.MISSING_CREDENTIAL
        assert recorder.requests == []
        await api.close()

    async def test_backup_restored_when_slot_empty(self):
        token = _demo_token(10)
        recorder = Recorder()
        api = _client(recorder)
        TokenRecovery(api, _backup(token), clock=lambda: NOW_MS)

        await api.get_profile()

        assert recorder.authorizations == [f"Bearer {token}"]
        assert api.get_access_token() == token
        await api.close()

    async def test_health_check_always_uses_anon_key(self):
        recorder = Recorder((503, {"status": "degraded"}))
        api = _client(recorder)
        api.set_access_token("real-token")

        body = await api.health_check()

        assert body == {"status": "degraded"}
        assert recorder.authorizations == [f"Bearer {ANON_KEY}"]
        await api.close()


class TestUnauthorizedHandling:
    async def test_unchanged_demo_backup_retries_until_cap(self):
        token = _demo_token(2)
        recorder = Recorder((401, {"error": "expired", "code": "expired_credential"}))
        sleep = FakeSleep()
        api = _client(recorder, max_retries=2, sleep=sleep)
        TokenRecovery(api, _backup(token), clock=lambda: NOW_MS)
        api.set_access_token(token)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await api.get_profile()

        assert len(recorder.requests) == 3
        assert exc_info.value.kind == CredentialFailure.EXPIRED_CREDENTIAL
        assert sleep.delays == [1.0, 2.0]
        await api.close()

    async def test_replaced_demo_backup_is_retried_with_new_token(self):
        stale = _demo_token(20)
        fresh = _demo_token(1)
        recorder = Recorder((401, {"error": "no", "code": "expired_credential"}), (200, {"id": "p"}))
        api = _client(recorder)
        TokenRecovery(api, _backup(fresh), clock=lambda: NOW_MS)
        api.set_access_token(stale)

        body = await api.get_profile()

        assert body == {"id": "p"}
        assert recorder.authorizations == [f"Bearer {stale}", f"Bearer {fresh}"]
        await api.close()

    async def test_missing_demo_backup_clears_token(self):
        token = _demo_token(2)
        recorder = Recorder((401, {"error": "no", "code": "expired_credential"}))
        api = _client(recorder)
        TokenRecovery(api, MemorySessionStore(), clock=lambda: NOW_MS)
        api.set_access_token(token)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await api.get_profile()

        assert exc_info.value.kind == CredentialFailure.EXPIRED_CREDENTIAL
        assert api.get_access_token() is None
        assert len(recorder.requests) == 1
        await api.close()

    async def test_provider_session_replaces_rejected_token(self):
        recorder = Recorder((401, {"error": "no", "code": "unknown_user"}), (200, {"ok": True}))
        api = _client(recorder)
        provider = StaticProvider("fresh-provider-token")
        api.session_provider = provider
        api.set_access_token("stale-provider-token")

        await api.get_matches()

        assert provider.calls == 1
        assert recorder.authorizations[-1] == "Bearer fresh-provider-token"
        assert api.get_access_token() == "fresh-provider-token"
        await api.close()

    async def test_provider_without_session_surfaces_server_kind(self):
        recorder = Recorder((401, {"error": "no", "code": "unknown_user"}))
        api = _client(recorder)
        api.session_provider = StaticProvider(None)
        api.set_access_token("stale-provider-token")

        with pytest.raises(AuthenticationFailed) as exc_info:
            await api.get_matches()

        assert exc_info.value.kind == CredentialFailure.UNKNOWN_USER
        assert len(recorder.requests) == 1
        await api.close()

    async def test_anon_key_401_is_not_retried(self):
        recorder = Recorder((401, {"error": "bad login", "code": "unknown_user"}))
        api = _client(recorder)

        with pytest.raises(AuthenticationFailed):
            await api.login("anna@example.se", "wrong")

        assert len(recorder.requests) == 1
        await api.close()

    async def test_zero_max_retries_sends_once(self):
        token = _demo_token(2)
        recorder = Recorder((401, {"error": "no", "code": "expired_credential"}))
        api = _client(recorder, max_retries=0)
        TokenRecovery(api, _backup(token), clock=lambda: NOW_MS)
        api.set_access_token(token)

        with pytest.raises(AuthenticationFailed):
            await api.get_profile()

        assert len(recorder.requests) == 1
        await api.close()


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("status", "error_type"),
        [(500, ServerFailure), (503, ServerFailure), (404, RequestRejected), (403, RequestRejected)],
    )
    async def test_status_codes(self, status, error_type):
        api = _client(Recorder((status, {"error": "nope", "code": "x"})))
        api.set_access_token("real-token")

        with pytest.raises(error_type) as exc_info:
            await api.get_profile()

        assert exc_info.value.status_code == status
        assert exc_info.value.message == "nope"
        await api.close()

    async def test_unknown_auth_code_maps_to_methods_exhausted(self):
        api = _client(Recorder((401, {"error": "nope", "code": "mystery"})))

        with pytest.raises(AuthenticationFailed) as exc_info:
            await api.health_check()

        assert exc_info.value.kind == CredentialFailure.METHODS_EXHAUSTED
        await api.close()

    async def test_timeout(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={})

        api = _client(slow, timeout=0.05)
        api.set_access_token("real-token")

        with pytest.raises(RequestTimedOut) as exc_info:
            await api.get_profile()

        assert exc_info.value.retryable
        await api.close()

    async def test_connection_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        api = _client(refuse)
        api.set_access_token("real-token")

        with pytest.raises(ConnectionFailed):
            await api.get_profile()
        await api.close()

class TestTransientFailures:
    async def test_reads_retry_server_failures(self):
        recorder = Recorder((503, {"error": "busy", "code": "service_unavailable"}), (200, {"id": "p"}))
        sleep = FakeSleep()
        api = _client(recorder, sleep=sleep, read_retry_options=DATA_RETRY_OPTIONS)
        api.set_access_token("real-token")

        assert await api.get_profile() == {"id": "p"}
        assert len(recorder.requests) == 2
        assert sleep.delays == [1.0]
        await api.close()

    async def test_writes_are_sent_once(self):
        recorder = Recorder((503, {"error": "busy", "code": "service_unavailable"}))
        api = _client(recorder, read_retry_options=DATA_RETRY_OPTIONS)
        api.set_access_token("real-token")

        with pytest.raises(ServerFailure):
            await api.create_profile({"firstName": "Anna"})
        assert len(recorder.requests) == 1
        await api.close()

    async def test_reads_do_not_retry_not_found(self):
        recorder = Recorder((404, {"error": "missing", "code": "not_found"}))
        api = _client(recorder, read_retry_options=DATA_RETRY_OPTIONS)
        api.set_access_token("real-token")

        with pytest.raises(RequestRejected):
            await api.get_profile()
        assert len(recorder.requests) == 1
        await api.close()

    async def test_open_circuit_stops_sending(self):
        recorder = Recorder((500, {"error": "boom", "code": "server_error"}))
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, clock=lambda: 0.0)
        api = _client(recorder, circuit_breaker=breaker)
        api.set_access_token("real-token")

        for _ in range(2):
            with pytest.raises(ServerFailure):
                await api.get_matches()
        with pytest.raises(CircuitOpenError):
            await api.get_matches()

        assert breaker.state == CircuitState.OPEN
        assert len(recorder.requests) == 2
        await api.close()

    async def test_retries_stop_once_circuit_opens(self):
        recorder = Recorder((500, {"error": "boom", "code": "server_error"}))
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, clock=lambda: 0.0)
        api = _client(recorder, circuit_breaker=breaker, read_retry_options=DATA_RETRY_OPTIONS)
        api.set_access_token("real-token")

        with pytest.raises(CircuitOpenError):
            await api.get_profile()
        assert len(recorder.requests) == 2
        await api.close()

    async def test_client_errors_leave_circuit_closed(self):
        recorder = Recorder((404, {"error": "missing", "code": "not_found"}))
        breaker = CircuitBreaker(failure_threshold=1, clock=lambda: 0.0)
        api = _client(recorder, circuit_breaker=breaker)
        api.set_access_token("real-token")

        for _ in range(3):
            with pytest.raises(RequestRejected):
                await api.get_profile()

        assert breaker.state == CircuitState.CLOSED
        assert len(recorder.requests) == 3
        await api.close()


class TestTokenStatus:
    def test_empty_slot(self):
        api = ApiClient("http://testserver/v1", anon_key=ANON_KEY, clock=lambda: NOW_MS)

        status = api.get_token_status()

        assert not status.has_token
        assert status.length == 0

    def test_demo_token_validity_follows_client_window(self):
        api = ApiClient("http://testserver/v1", anon_key=ANON_KEY, clock=lambda: NOW_MS)
        api.set_access_token(_demo_token(30))

        status = api.get_token_status()

        assert status.token_type == "demo"
        assert not status.is_valid

    def test_is_demo_token(self):
        assert is_demo_token("demo-token-1")
        assert not is_demo_token("eyJhbGciOi")
        assert not is_demo_token(None)
