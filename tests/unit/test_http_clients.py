"""
Unit Tests for Collaborator HTTP Clients

Tests the resilient HTTP client (retry, backoff, circuit breaker), the
ledger relay client and the text-generation client. All traffic goes
through httpx.MockTransport; nothing leaves the process.
"""

import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.infra.http_client import (
    CircuitBreaker,
    CircuitState,
    HttpErrorCode,
    ResilientHttpClient,
)
from app.infra.ledger_client import LedgerClient, build_memo
from app.infra.textgen_client import TextGenerationClient
from services.gate_errors import ExternalServiceError, GateErrorCode


DIGEST = "ab" * 32


def no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Circuit Breaker
# =============================================================================

class TestCircuitBreaker:

    def test_opens_after_threshold_and_recovers(self) -> None:
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=10, clock=lambda: now[0])

        breaker.record_failure()
        assert breaker.allow_request() is True
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

        now[0] = 10.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self) -> None:
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=5, clock=lambda: now[0])
        breaker.record_failure()
        now[0] = 6.0
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN


# =============================================================================
# Resilient HTTP Client
# =============================================================================

class TestResilientHttpClient:

    def test_retries_server_errors_then_succeeds(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.headers["X-Attempt"])
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        client = ResilientHttpClient(
            "http://collab.test", transport=httpx.MockTransport(handler), sleep=no_sleep,
        )
        response = client.request("POST", "/work", {"a": 1}, correlation_id="cid-1")

        assert response.success is True
        assert response.data == {"ok": True}
        assert response.retries == 2
        assert attempts == ["1", "2", "3"]

    def test_client_error_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(422)

        client = ResilientHttpClient(
            "http://collab.test", transport=httpx.MockTransport(handler), sleep=no_sleep,
        )
        response = client.request("POST", "/work")

        assert response.success is False
        assert response.error_code == HttpErrorCode.INVALID_RESPONSE.value
        assert len(calls) == 1

    def test_connection_errors_exhaust_retries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = ResilientHttpClient(
            "http://collab.test", max_retries=2,
            transport=httpx.MockTransport(handler), sleep=no_sleep,
        )
        response = client.request("GET", "/health")

        assert response.success is False
        assert response.error_code == HttpErrorCode.MAX_RETRIES.value
        assert "refused" in response.error_message

    def test_invalid_url_fails_without_retry(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(200, json={})

        client = ResilientHttpClient(
            "http://[::1", max_retries=3,
            transport=httpx.MockTransport(handler), sleep=no_sleep,
        )
        response = client.request("GET", "/health")

        assert response.success is False
        assert response.error_code == HttpErrorCode.CONNECTION_FAILED.value
        assert response.error_message.startswith("Invalid URL")
        assert response.retries == 0
        assert calls == []

    def test_open_circuit_short_circuits(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(400)

        client = ResilientHttpClient(
            "http://collab.test", failure_threshold=1,
            transport=httpx.MockTransport(handler), sleep=no_sleep,
        )
        client.request("GET", "/a")
        response = client.request("GET", "/b")

        assert response.error_code == HttpErrorCode.CIRCUIT_OPEN.value
        assert len(calls) == 1

    def test_plain_text_body(self) -> None:
        client = ResilientHttpClient(
            "http://collab.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="not json")),
            sleep=no_sleep,
        )
        assert client.request("GET", "/text").data == "not json"


# =============================================================================
# Ledger Client
# =============================================================================

class TestLedgerClient:

    def test_xrpl_memo_embeds_compact_json(self) -> None:
        memo = build_memo("XRPL", "DEAL", "DEAL-1", DIGEST)

        assert memo["type"] == "FTH_PROOF"
        assert memo["format"] == "application/json"
        assert memo["data"] == json.dumps(
            {"hash": DIGEST, "id": "DEAL-1", "type": "DEAL"}, separators=(",", ":"),
        )

    def test_stellar_memo_is_hash(self) -> None:
        assert build_memo("STELLAR", "DEAL", "DEAL-1", DIGEST) == {"type": "hash", "data": DIGEST}

    def test_submit_sends_self_transfer(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"tx_hash": "TX123"})

        client = LedgerClient(
            "xrpl", "http://relay.test", "rAnchor", "sEd-secret",
            transport=httpx.MockTransport(handler),
        )

        assert client.submit("DEAL", "DEAL-1", DIGEST, "cid-1") == "TX123"
        assert seen["path"] == "/submit"
        assert seen["auth"] == "Bearer sEd-secret"
        assert seen["body"]["chain"] == "XRPL"
        assert seen["body"]["account"] == seen["body"]["destination"] == "rAnchor"
        assert seen["body"]["amount"] == "1"

    def test_submit_without_tx_hash_fails(self) -> None:
        client = LedgerClient(
            "XRPL", "http://relay.test", "rAnchor", "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            client.submit("DEAL", "DEAL-1", DIGEST)
        assert exc_info.value.error_code == GateErrorCode.EXTERNAL_SERVICE_FAILED

    def test_submit_rejected_by_relay(self) -> None:
        client = LedgerClient(
            "STELLAR", "http://relay.test", "GANCHOR", "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            client.submit("DEAL", "DEAL-1", DIGEST)
        assert exc_info.value.details["chain"] == "STELLAR"

    def test_confirmation_lookup(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            validated = request.url.path == "/tx/TXOK"
            return httpx.Response(200, json={"validated": validated})

        client = LedgerClient(
            "XRPL", "http://relay.test", "rAnchor", "secret",
            transport=httpx.MockTransport(handler),
        )

        assert client.is_confirmed("TXOK") is True
        assert client.is_confirmed("TXWAIT") is False

    def test_malformed_confirmation(self) -> None:
        client = LedgerClient(
            "XRPL", "http://relay.test", "rAnchor", "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["x"])),
        )

        with pytest.raises(ExternalServiceError):
            client.is_confirmed("TX1")


# =============================================================================
# Text Generation Client
# =============================================================================

class TestTextGenerationClient:

    def test_output_envelope_unwrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["response_format"] == "json"
            return httpx.Response(200, json={"output": {"flags": ["X"]}})

        client = TextGenerationClient("http://textgen.test", transport=httpx.MockTransport(handler))

        assert client.generate("prompt", system="sys") == {"flags": ["X"]}

    def test_bare_object_accepted(self) -> None:
        client = TextGenerationClient(
            "http://textgen.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"analysis": "ok"})),
        )
        assert client.generate("prompt") == {"analysis": "ok"}

    def test_failure_raises_external_error(self) -> None:
        client = TextGenerationClient(
            "http://textgen.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(400)),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            client.generate("prompt")
        assert exc_info.value.details["transport_error"] == HttpErrorCode.INVALID_RESPONSE.value

    def test_invalid_url_raises_external_error(self) -> None:
        client = TextGenerationClient("http://[::1")

        with pytest.raises(ExternalServiceError) as exc_info:
            client.generate("prompt")
        assert exc_info.value.details["transport_error"] == HttpErrorCode.CONNECTION_FAILED.value
