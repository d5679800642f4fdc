from __future__ import annotations

import pytest

from app.notifications.contracts import ChannelKind, DeliveryTarget, SubscriberRole, Validity
from app.notifications.dispatch import DispatchGateway
from app.notifications.reconciliation import PROBE_GONE_REASON, ReconciliationPass
from app.notifications.subscriber_registry import SubscriberUpdate
from tests.conftest import FakeSender, gateway_channel, webpush_channel


def _reconciler(registry, audit_repo, sender, *, enabled: bool = True) -> ReconciliationPass:
  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: sender, ChannelKind.GATEWAY: sender}, registry=registry, dispatch_log_repo=audit_repo)
  return ReconciliationPass(gateway=gateway, registry=registry, enabled=enabled)


@pytest.mark.anyio
async def test_gone_channel_is_cleared_with_probe_reason(registry, audit_repo):
  channel = gateway_channel("stale")
  await registry.upsert("u1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=channel))
  reconciler = _reconciler(registry, audit_repo, FakeSender(gone={channel.key}))

  retired = await reconciler.on_channel_written(DeliveryTarget(channel=channel, subject_id="u1"))

  record = await registry.get("u1")
  assert retired is True
  assert record.validity == Validity.INVALID
  assert record.channel is None
  assert record.invalid_reason == PROBE_GONE_REASON


@pytest.mark.anyio
async def test_deliverable_channel_is_left_alone(registry, audit_repo, sender):
  channel = webpush_channel("ok")
  await registry.upsert("u1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=channel))

  retired = await _reconciler(registry, audit_repo, sender).on_channel_written(DeliveryTarget(channel=channel, subject_id="u1"))

  assert retired is False
  assert (await registry.get("u1")).reachable
  assert sender.sent[0].probe is True


@pytest.mark.anyio
async def test_transient_probe_failure_does_not_retire(registry, audit_repo):
  channel = webpush_channel("flaky")
  await registry.upsert("u1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=channel))

  retired = await _reconciler(registry, audit_repo, FakeSender(flaky={channel.key})).on_channel_written(DeliveryTarget(channel=channel, subject_id="u1"))

  assert retired is False
  assert (await registry.get("u1")).reachable


@pytest.mark.anyio
async def test_renewed_channel_survives_probe_of_old_one(registry, audit_repo):
  old, new = gateway_channel("old"), gateway_channel("new")
  await registry.upsert("u1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=old))
  reconciler = _reconciler(registry, audit_repo, FakeSender(gone={old.key}))
  # The device re-subscribes before the probe result for the old channel lands.
  await registry.upsert("u1", SubscriberUpdate(channel=new))

  retired = await reconciler.on_channel_written(DeliveryTarget(channel=old, subject_id="u1"))

  record = await registry.get("u1")
  assert retired is False
  assert record.channel == new
  assert record.reachable


@pytest.mark.anyio
async def test_schedule_runs_in_background_and_drains(registry, audit_repo):
  channel = gateway_channel("stale")
  await registry.upsert("u1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=channel))
  reconciler = _reconciler(registry, audit_repo, FakeSender(gone={channel.key}))

  task = reconciler.schedule(DeliveryTarget(channel=channel, subject_id="u1"))
  await reconciler.drain()

  assert task is not None
  assert task.result() is True
  assert not (await registry.get("u1")).reachable


@pytest.mark.anyio
async def test_disabled_reconciliation_schedules_nothing(registry, audit_repo, sender):
  reconciler = _reconciler(registry, audit_repo, sender, enabled=False)

  assert reconciler.schedule(DeliveryTarget(channel=webpush_channel("a"))) is None
  await reconciler.drain()
  assert sender.sent == []
