"""
Tests for BC webhook subscription create/renew/delete.
"""

import asyncio

import pytest


URL = "https://sync.example.com/webhooks/bc"


@pytest.fixture
def store(kv):
    from stores import BcWebhookStore

    return BcWebhookStore(kv)


class TestEnsure:
    """Creating subscriptions per entity set."""

    def test_creates_and_stores(self, fake_bc, store, now_ms):
        from sync.subscriptions import ensure_bc_subscriptions

        result = asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, client_state="s3cret", now_ms=now_ms))

        assert result["skipped"] == [] and result["errors"] == []
        record = result["created"][0]
        assert record["id"] == "sub-premiumSyncQueue"
        assert record["entitySet"] == "premiumSyncQueue"
        assert record["createdAt"] == "2025-01-15T12:00:00.000Z"
        assert fake_bc.subscriptions["sub-premiumSyncQueue"]["clientState"] == "s3cret"
        assert asyncio.run(store.get_subscription("premiumSyncQueue")) == record

    def test_live_subscription_is_skipped(self, fake_bc, store, now_ms):
        from sync.subscriptions import ensure_bc_subscriptions

        asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))
        result = asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))

        assert result["created"] == []
        assert result["skipped"] == ["premiumSyncQueue"]

    def test_expiring_subscription_is_recreated(self, fake_bc, store, now_ms, minutes_ago):
        from sync.subscriptions import ensure_bc_subscriptions

        asyncio.run(store.save_subscription("premiumSyncQueue", {"id": "old", "expirationDateTime": minutes_ago(-0.5)}))

        result = asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))

        assert [r["id"] for r in result["created"]] == ["sub-premiumSyncQueue"]

    def test_missing_id_is_looked_up(self, fake_bc, store, now_ms):
        from sync.subscriptions import ensure_bc_subscriptions

        create = fake_bc.create_webhook_subscription

        async def create_without_id(entity_set, notification_url, client_state=None):
            subscription = await create(entity_set, notification_url, client_state)
            subscription.pop("subscriptionId")
            return subscription

        fake_bc.create_webhook_subscription = create_without_id

        result = asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, entity_sets=["projectTasks"], now_ms=now_ms))

        assert result["created"][0]["id"] == "sub-projectTasks"

    def test_create_failure_is_reported(self, fake_bc, store, now_ms):
        from sync.subscriptions import ensure_bc_subscriptions

        async def refuse(entity_set, notification_url, client_state=None):
            raise RuntimeError("BC POST subscriptions -> 400: The notification url did not respond")

        fake_bc.create_webhook_subscription = refuse

        result = asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))

        assert result["errors"][0]["entitySet"] == "premiumSyncQueue"
        assert asyncio.run(store.get_subscription("premiumSyncQueue")) is None


class TestRenewAndDelete:
    """Renewal and removal of stored subscriptions."""

    def test_renew_extends_three_days(self, fake_bc, store, now_ms):
        from sync.subscriptions import ensure_bc_subscriptions, renew_bc_subscriptions

        asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))

        result = asyncio.run(renew_bc_subscriptions(fake_bc, store, now_ms=now_ms + 60_000))

        assert result["renewed"][0]["expirationDateTime"] == "2025-01-18T12:01:00.000Z"
        stored = asyncio.run(store.get_subscription("premiumSyncQueue"))
        assert stored["expirationDateTime"] == "2025-01-18T12:01:00.000Z"

    def test_renew_drops_subscription_bc_forgot(self, fake_bc, store, now_ms):
        from sync.subscriptions import renew_bc_subscriptions

        asyncio.run(store.save_subscription("premiumSyncQueue", {"id": "sub-gone"}))

        result = asyncio.run(renew_bc_subscriptions(fake_bc, store, now_ms=now_ms))

        assert result["missing"] == ["premiumSyncQueue"]
        assert asyncio.run(store.get_subscription("premiumSyncQueue")) is None

    def test_renew_without_stored_subscription(self, fake_bc, store, now_ms):
        from sync.subscriptions import renew_bc_subscriptions

        result = asyncio.run(renew_bc_subscriptions(fake_bc, store, entity_sets=["projects"], now_ms=now_ms))

        assert result == {"renewed": [], "missing": ["projects"], "errors": []}

    def test_delete(self, fake_bc, store, now_ms):
        from sync.subscriptions import delete_bc_subscription, ensure_bc_subscriptions

        asyncio.run(ensure_bc_subscriptions(fake_bc, store, URL, now_ms=now_ms))

        assert asyncio.run(delete_bc_subscription(fake_bc, store, "premiumSyncQueue")) is True
        assert fake_bc.subscriptions == {}
        assert asyncio.run(delete_bc_subscription(fake_bc, store, "premiumSyncQueue")) is False

    @pytest.mark.parametrize(
        "expiration,expected",
        [(None, True), ("2025-01-15T12:00:30Z", True), ("2025-01-15T12:05:00Z", False)],
    )
    def test_expiry_buffer(self, now_ms, expiration, expected):
        from sync.subscriptions import is_expiring_soon

        assert is_expiring_soon(expiration, now_ms) is expected
