"""
Retrying Graph HTTP Tests (Unit)
================================

WHAT: Unit tests for send_with_retry backoff and Graph error mapping.
WHY: Meta throttles in bursts; retries must back off on schedule, stop after
     the attempt budget and surface the last error instead of swallowing it.

REFERENCES:
- backend/adsync/services/meta_graph_http.py
"""

import asyncio

import httpx
import pytest

from adsync.services.meta_graph_http import (
    MetaAdsAuthenticationError,
    MetaAdsClientError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
    MetaAdsValidationError,
    RetryPolicy,
    error_from_response,
    is_retriable_status,
    retrying,
    send_with_retry,
)

REQUEST = httpx.Request("GET", "https://graph.facebook.com/v18.0/act_1/insights")


class _ScriptedSender:
    """Returns (or raises) the scripted items in order."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    async def __call__(self, request):
        self.calls += 1
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body, request=request)


class _RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _run(sender, policy=RetryPolicy(), sleep=None):
    sleep = sleep or _RecordingSleep()
    return asyncio.run(send_with_retry(sender, REQUEST, policy=policy, sleep=sleep, context="test"))


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=6, base_delay=0.5)
        assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 8.0]

    @pytest.mark.parametrize("status", [408, 409, 425, 429, 500, 502, 503, 599])
    def test_retriable_statuses(self, status):
        assert is_retriable_status(status)

    @pytest.mark.parametrize("status", [200, 400, 401, 403, 404, 422])
    def test_non_retriable_statuses(self, status):
        assert not is_retriable_status(status)


class TestSendWithRetry:
    def test_success_first_try(self):
        sender = _ScriptedSender((200, {"ok": True}))
        response = _run(sender)
        assert response.json() == {"ok": True}
        assert sender.calls == 1

    def test_retries_then_succeeds(self):
        sender = _ScriptedSender((503, {}), (429, {}), (200, {"ok": True}))
        sleep = _RecordingSleep()

        response = _run(sender, sleep=sleep)

        assert response.status_code == 200
        assert sender.calls == 3
        assert sleep.delays == [0.5, 1.0]

    def test_exhausted_retries_raise_last_error(self):
        sender = _ScriptedSender(*[(429, {"error": {"message": "slow down", "code": 17}})] * 6)
        sleep = _RecordingSleep()

        with pytest.raises(MetaAdsRateLimitError, match="slow down"):
            _run(sender, sleep=sleep)

        assert sender.calls == 6
        assert sleep.delays == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_non_retriable_raises_immediately(self):
        sender = _ScriptedSender((400, {"error": {"message": "bad field", "code": 100}}))
        with pytest.raises(MetaAdsValidationError):
            _run(sender)
        assert sender.calls == 1

    def test_network_error_retried(self):
        sender = _ScriptedSender(httpx.ConnectError("reset"), (200, {"ok": True}))
        assert _run(sender).status_code == 200
        assert sender.calls == 2

    def test_network_error_on_last_attempt_propagates(self):
        sender = _ScriptedSender(httpx.ReadTimeout("slow"), httpx.ReadTimeout("slow"))
        with pytest.raises(httpx.ReadTimeout):
            _run(sender, policy=RetryPolicy(max_attempts=2, base_delay=0.1))

    def test_retrying_wrapper(self):
        sender = _ScriptedSender((500, {}), (200, {"ok": True}))
        sleep = _RecordingSleep()
        send = retrying(sender, policy=RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleep)

        response = asyncio.run(send(REQUEST, context="wrapped"))

        assert response.status_code == 200
        assert sleep.delays == [1.0]


class TestErrorMapping:
    def _response(self, status, error=None, headers=None):
        body = {"error": error} if error is not None else {}
        return httpx.Response(status, json=body, headers=headers, request=REQUEST)

    def test_expired_token(self):
        error = error_from_response(self._response(400, {"message": "Session expired", "code": 190}))
        assert isinstance(error, MetaAdsAuthenticationError)
        assert error.error_code == 190

    def test_forbidden_is_permission(self):
        assert isinstance(error_from_response(self._response(403)), MetaAdsPermissionError)

    def test_unknown_object_is_permission(self):
        error = error_from_response(self._response(400, {"message": "Unsupported get request", "code": 100, "error_subcode": 33}))
        assert isinstance(error, MetaAdsPermissionError)

    def test_permission_code_range(self):
        assert isinstance(error_from_response(self._response(400, {"code": 272})), MetaAdsPermissionError)

    def test_other_server_error_is_base(self):
        error = error_from_response(self._response(500, {"message": "oops", "code": 1}))
        assert type(error) is MetaAdsClientError

    def test_context_and_trace_id(self):
        error = error_from_response(
            self._response(400, {"message": "bad"}, headers={"x-fb-trace-id": "trace-1"}),
            context="start report",
        )
        assert "start report" in str(error)
        assert error.trace_id == "trace-1"
