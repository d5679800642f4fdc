from __future__ import annotations

import threading

import pytest

from app.notifications.contracts import ChannelKind, DeliveryTarget, FailureReason, OutboundPush, PlatformHint, ServerInternalError, SubscriberRole, Validity
from app.notifications.dispatch import DispatchGateway
from app.notifications.dispatch_log_repo import DispatchLogEntry
from app.notifications.payloads import build_notification_request
from app.notifications.subscriber_registry import InMemorySubscriberRegistry, SubscriberUpdate
from tests.conftest import FakeSender, RecordingLogRepository, gateway_channel, webpush_channel


async def _seed_admins(registry, channels, group_id: str = "shop-1") -> None:
  for index, channel in enumerate(channels):
    await registry.upsert(f"admin-{index}", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id=group_id, channel=channel))


def _request():
  return build_notification_request("New appointment", "Ana requested an appointment", {"url": "/admin/appointments", "appointmentId": "a1"})


@pytest.mark.anyio
async def test_group_dispatch_returns_one_outcome_per_recipient(gateway, registry, sender):
  channels = [webpush_channel("a"), gateway_channel("b"), webpush_channel("c")]
  await _seed_admins(registry, channels)

  outcomes = await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())

  assert len(outcomes) == 3
  assert all(outcome.delivered for outcome in outcomes)
  assert {push.channel for push in sender.sent} == set(channels)
  assert {outcome.subject_id for outcome in outcomes} == {"admin-0", "admin-1", "admin-2"}


@pytest.mark.anyio
async def test_gone_recipients_are_retired_and_others_untouched(registry, audit_repo):
  channels = [gateway_channel(str(index)) for index in range(5)]
  gone = {channels[1].key, channels[3].key}
  sender = FakeSender(gone=gone, flaky={channels[4].key})
  gateway = DispatchGateway(senders={ChannelKind.GATEWAY: sender}, registry=registry, dispatch_log_repo=audit_repo)
  await _seed_admins(registry, channels)

  outcomes = await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())

  by_key = {outcome.channel_key: outcome for outcome in outcomes}
  assert len(outcomes) == 5
  assert {key for key, outcome in by_key.items() if outcome.recipient_gone} == gone
  assert by_key[channels[4].key].reason == FailureReason.UNAVAILABLE

  records = {record.subject_id: record for record in await registry.query_by_group_and_role("shop-1", SubscriberRole.ADMIN, include_invalid=True)}
  assert records["admin-1"].validity == Validity.INVALID
  assert records["admin-3"].invalid_reason == "recipient-gone"
  assert records["admin-4"].validity == Validity.VALID
  assert records["admin-0"].reachable and records["admin-2"].reachable


@pytest.mark.anyio
async def test_registry_failure_raises_server_internal(sender, audit_repo):
  class BrokenRegistry(InMemorySubscriberRegistry):
    async def query_by_group_and_role(self, group_id, role, *, include_invalid=False):
      raise ConnectionError("database down")

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: sender}, registry=BrokenRegistry(), dispatch_log_repo=audit_repo)

  with pytest.raises(ServerInternalError):
    await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())
  assert sender.sent == []


@pytest.mark.anyio
async def test_empty_group_dispatch_returns_no_outcomes(gateway, audit_repo):
  outcomes = await gateway.dispatch_to_group("shop-empty", SubscriberRole.ADMIN, _request())

  assert outcomes == []
  assert audit_repo.entries[0].outcomes == []


@pytest.mark.anyio
async def test_group_sends_run_concurrently(registry, audit_repo):
  parties = 3
  barrier = threading.Barrier(parties, timeout=5)

  class BarrierSender(FakeSender):
    def send(self, push: OutboundPush) -> str:
      # Each send blocks until every send has started.
      barrier.wait()
      return super().send(push)

  sender = BarrierSender()
  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: sender}, registry=registry, dispatch_log_repo=audit_repo)
  await _seed_admins(registry, [webpush_channel(str(index)) for index in range(parties)])

  outcomes = await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())

  assert all(outcome.delivered for outcome in outcomes)


@pytest.mark.anyio
async def test_payload_hints_follow_each_recipient(gateway, registry, sender):
  await registry.upsert("phone", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=gateway_channel("p"), platform=PlatformHint.MOBILE))
  await registry.upsert("laptop", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("l"), platform=PlatformHint.DESKTOP))
  await registry.upsert("pwa", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("i"), platform=PlatformHint.MOBILE, standalone=True))

  await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())

  profiles = {push.channel.key: push.hints.profile for push in sender.sent}
  assert profiles == {gateway_channel("p").key: "mobile-push", webpush_channel("l").key: "desktop-push", webpush_channel("i").key: "installed-app"}
  assert {push.request.title for push in sender.sent} == {"New appointment"}
  assert {push.link for push in sender.sent} == {"https://barber.example.com/admin/appointments"}


@pytest.mark.anyio
async def test_dispatch_is_audited_with_redacted_outcomes(gateway, registry, audit_repo):
  await _seed_admins(registry, [webpush_channel("a")])

  await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request(), trigger="booking")

  entry = audit_repo.entries[0]
  assert entry.trigger == "booking"
  assert entry.group_id == "shop-1"
  assert entry.role == "admin"
  assert entry.delivered == 1
  assert entry.outcomes[0].as_dict()["channel"] != webpush_channel("a").endpoint


@pytest.mark.anyio
async def test_audit_failure_does_not_fail_dispatch(registry, sender):
  class FailingLogRepository(RecordingLogRepository):
    async def insert(self, entry: DispatchLogEntry) -> None:
      raise RuntimeError("audit table missing")

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: sender}, registry=registry, dispatch_log_repo=FailingLogRepository())
  await _seed_admins(registry, [webpush_channel("a")])

  outcomes = await gateway.dispatch_to_group("shop-1", SubscriberRole.ADMIN, _request())

  assert outcomes[0].delivered


@pytest.mark.anyio
async def test_missing_sender_is_reported_as_internal(registry, audit_repo, sender):
  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: sender}, registry=registry, dispatch_log_repo=audit_repo)

  outcome = await gateway.dispatch_one(DeliveryTarget(channel=gateway_channel("a")), _request())

  assert not outcome.delivered
  assert outcome.reason == FailureReason.INTERNAL


@pytest.mark.anyio
async def test_unexpected_sender_crash_becomes_outcome(registry, audit_repo):
  class CrashingSender:
    def send(self, push: OutboundPush) -> str:
      raise KeyError("boom")

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: CrashingSender()}, registry=registry, dispatch_log_repo=audit_repo)

  outcome = await gateway.dispatch_one(DeliveryTarget(channel=webpush_channel("a")), _request())

  assert outcome.reason == FailureReason.INTERNAL


@pytest.mark.anyio
async def test_dispatch_one_retires_gone_channel(registry, audit_repo):
  channel = gateway_channel("gone")
  gateway = DispatchGateway(senders={ChannelKind.GATEWAY: FakeSender(gone={channel.key})}, registry=registry, dispatch_log_repo=audit_repo)
  await _seed_admins(registry, [channel])

  outcome = await gateway.dispatch_one(DeliveryTarget(channel=channel), _request())

  assert outcome.recipient_gone
  assert (await registry.get("admin-0")).validity == Validity.INVALID
  assert audit_repo.entries[0].trigger == "on-demand"


@pytest.mark.anyio
async def test_probe_sends_silent_message(gateway, sender):
  outcome = await gateway.probe(DeliveryTarget(channel=webpush_channel("a")))

  assert outcome.delivered
  assert sender.sent[0].probe is True
  assert sender.sent[0].hints.ttl_seconds == 0
