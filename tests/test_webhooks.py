"""
Tests for webhook signing and the WebhookNotifier fan-out.

HTTP is faked with httpx.MockTransport; every request the notifier makes is
recorded per host so fan-out isolation can be asserted exactly.
"""
import json
from collections import defaultdict

import httpx
import pytest

from config.settings import WebhookConfig
from database.store_memory import InMemoryJobStore
from models.errors import InvalidInput, NotFound
from webhooks.notifier import (
    WebhookNotifier, build_envelope, serialize_envelope, sign_payload, verify_signature,
)


class FakeReceivers:
    """MockTransport handler: answers per host, records every request."""

    def __init__(self, status_by_host: dict[str, int] = None, raise_for: set[str] = None):
        self.status_by_host = status_by_host or {}
        self.raise_for = raise_for or set()
        self.requests: dict[str, list[httpx.Request]] = defaultdict(list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.requests[host].append(request)
        if host in self.raise_for:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_by_host.get(host, 200), json={"ok": True})


def make_notifier(store, receivers, **config) -> WebhookNotifier:
    cfg = WebhookConfig(timeout_s=1.0, retry_backoff_s=0, **config)
    return WebhookNotifier(store, cfg, transport=httpx.MockTransport(receivers))


# ══════════════════════════════════════════════════════════════
#  SIGNING
# ══════════════════════════════════════════════════════════════

class TestSignatures:
    def test_sign_format(self):
        sig = sign_payload('{"event":"message.new"}', "s3cret")
        assert sig.startswith("sha256=")
        assert len(sig) == len("sha256=") + 64

    def test_round_trip(self):
        body = serialize_envelope(build_envelope("job.completed", {"id": "j1"}))
        assert verify_signature(body, sign_payload(body, "s3cret"), "s3cret")
        assert verify_signature(body.decode(), sign_payload(body, "s3cret"), "s3cret")

    def test_prefix_optional(self):
        payload = "hello"
        bare = sign_payload(payload, "k")[len("sha256="):]
        assert verify_signature(payload, bare, "k")

    def test_single_byte_tamper_detected(self):
        body = b'{"event":"job.failed","data":{"id":"j1"}}'
        sig = sign_payload(body, "k")
        tampered = body.replace(b"j1", b"j2")
        assert not verify_signature(tampered, sig, "k")

    def test_wrong_secret(self):
        assert not verify_signature("x", sign_payload("x", "a"), "b")

    @pytest.mark.parametrize("signature,secret", [(None, "k"), ("", "k"), ("sha256=abc", None)])
    def test_missing_inputs(self, signature, secret):
        assert verify_signature("payload", signature, secret) is False

    def test_envelope_shape(self):
        env = build_envelope("message.new", {"chat_id": "1@c.us"})
        assert env["event"] == "message.new"
        assert env["version"] == "1.0"
        assert env["data"] == {"chat_id": "1@c.us"}
        assert "T" in env["timestamp"]
        assert serialize_envelope(env) == json.dumps(env, separators=(",", ":")).encode()


# ══════════════════════════════════════════════════════════════
#  SUBSCRIPTIONS
# ══════════════════════════════════════════════════════════════

class TestSubscriptions:
    @pytest.fixture
    def notifier(self):
        return make_notifier(InMemoryJobStore(), FakeReceivers())

    @pytest.mark.asyncio
    async def test_register_and_list(self, notifier):
        sub = await notifier.register("https://crm.example.com/hook", ["job.completed"], "s")
        subs = await notifier.list_subscriptions()
        assert [s.id for s in subs] == [sub.id]
        assert subs[0].events == ["job.completed"]
        assert subs[0].is_active

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://example.com/hook", "not a url", "/relative/path"])
    async def test_register_rejects_bad_url(self, notifier, url):
        with pytest.raises(InvalidInput):
            await notifier.register(url, ["job.completed"])

    @pytest.mark.asyncio
    async def test_register_requires_events(self, notifier):
        with pytest.raises(InvalidInput):
            await notifier.register("https://example.com/hook", [])

    @pytest.mark.asyncio
    async def test_unregister_is_soft_delete(self, notifier):
        sub = await notifier.register("https://example.com/hook", ["message.new"])
        await notifier.unregister(sub.id)
        assert await notifier.list_subscriptions() == []
        all_subs = await notifier.list_subscriptions(include_inactive=True)
        assert len(all_subs) == 1
        assert all_subs[0].is_active is False

    @pytest.mark.asyncio
    async def test_unregister_unknown(self, notifier):
        with pytest.raises(NotFound):
            await notifier.unregister("missing")


# ══════════════════════════════════════════════════════════════
#  FAN-OUT
# ══════════════════════════════════════════════════════════════

class TestNotify:
    @pytest.mark.asyncio
    async def test_one_failing_subscriber_does_not_affect_others(self):
        receivers = FakeReceivers(status_by_host={"b.example.com": 500})
        store = InMemoryJobStore()
        notifier = make_notifier(store, receivers)
        for host in ("a", "b", "c"):
            await notifier.register(f"https://{host}.example.com/hook", ["job.completed"])

        outcomes = await notifier.notify("job.completed", {"id": "j1"})

        assert len(outcomes) == 3
        assert sum(o.delivered for o in outcomes) == 2
        assert len(receivers.requests["a.example.com"]) == 1
        assert len(receivers.requests["c.example.com"]) == 1
        failed = [o for o in outcomes if not o.delivered][0]
        assert failed.status_code == 500
        assert failed.url == "https://b.example.com/hook"
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_contained(self):
        receivers = FakeReceivers(raise_for={"down.example.com"})
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://down.example.com/hook", ["message.new"])
        await notifier.register("https://up.example.com/hook", ["message.new"])
        outcomes = await notifier.notify("message.new", {"content": "hi"})
        by_url = {o.url: o for o in outcomes}
        assert by_url["https://up.example.com/hook"].delivered
        assert not by_url["https://down.example.com/hook"].delivered
        assert "connection refused" in by_url["https://down.example.com/hook"].error

    @pytest.mark.asyncio
    async def test_signed_request(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://a.example.com/hook", ["job.failed"], secret="topsecret")
        await notifier.notify("job.failed", {"id": "j9", "error_message": "bridge down"})

        request = receivers.requests["a.example.com"][0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "WaDispatch-Webhook/1.0"
        assert request.headers["X-Webhook-Event"] == "job.failed"
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], "topsecret")
        envelope = json.loads(request.content)
        assert envelope["event"] == "job.failed"
        assert envelope["data"]["id"] == "j9"
        assert envelope["version"] == "1.0"

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://a.example.com/hook", ["job.failed"])
        await notifier.notify("job.failed", {})
        assert "X-Webhook-Signature" not in receivers.requests["a.example.com"][0].headers

    @pytest.mark.asyncio
    async def test_event_filter_and_inactive(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://jobs.example.com/hook", ["job.completed"])
        await notifier.register("https://msgs.example.com/hook", ["message.new"])
        gone = await notifier.register("https://gone.example.com/hook", ["message.new"])
        await notifier.unregister(gone.id)

        outcomes = await notifier.notify("message.new", {"content": "hello"})
        assert [o.url for o in outcomes] == ["https://msgs.example.com/hook"]
        assert "jobs.example.com" not in receivers.requests
        assert "gone.example.com" not in receivers.requests

    @pytest.mark.asyncio
    async def test_no_subscribers(self):
        notifier = make_notifier(InMemoryJobStore(), FakeReceivers())
        assert await notifier.notify("job.completed", {}) == []

    @pytest.mark.asyncio
    async def test_disabled(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers, enabled=False)
        await notifier.register("https://a.example.com/hook", ["job.completed"])
        assert await notifier.notify("job.completed", {}) == []
        assert receivers.requests == {}

    @pytest.mark.asyncio
    async def test_single_attempt_by_default(self):
        receivers = FakeReceivers(status_by_host={"a.example.com": 503})
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://a.example.com/hook", ["job.completed"])
        outcomes = await notifier.notify("job.completed", {})
        assert outcomes[0].attempts == 1
        assert len(receivers.requests["a.example.com"]) == 1

    @pytest.mark.asyncio
    async def test_optional_retry(self):
        receivers = FakeReceivers(status_by_host={"a.example.com": 503})
        notifier = make_notifier(InMemoryJobStore(), receivers, max_attempts=3)
        await notifier.register("https://a.example.com/hook", ["job.completed"])
        outcomes = await notifier.notify("job.completed", {})
        assert outcomes[0].attempts == 3
        assert not outcomes[0].delivered
        assert len(receivers.requests["a.example.com"]) == 3

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        class BrokenStore(InMemoryJobStore):
            async def list_subscriptions(self, include_inactive=False):
                raise RuntimeError("db gone")

        notifier = make_notifier(BrokenStore(), FakeReceivers())
        assert await notifier.notify("job.completed", {}) == []

    @pytest.mark.asyncio
    async def test_background_notify_drained_on_close(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers)
        await notifier.register("https://a.example.com/hook", ["job.completed"])
        task = notifier.notify_background("job.completed", {"id": "j1"})
        await notifier.aclose()
        assert task.done()
        assert len(receivers.requests["a.example.com"]) == 1

    @pytest.mark.asyncio
    async def test_send_test(self):
        receivers = FakeReceivers()
        notifier = make_notifier(InMemoryJobStore(), receivers)
        outcome = await notifier.send_test("https://check.example.com/hook", secret="k")
        assert outcome.delivered
        request = receivers.requests["check.example.com"][0]
        body = json.loads(request.content)
        assert body["event"] == "webhook.test"
        assert body["data"]["test"] is True
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], "k")
