"""
Tests for app.services.notifications: fan-out, channel broker and subscriber feeds.
"""

import asyncio

import pytest

from app.core.exceptions import NotFoundError, TransientError, ValidationError
from app.models import ActorRole, NotificationKind, OrderStatus, OrderType, ReadState
from app.services import build_services
from app.services.notifications import (
    BaseCuePlayer,
    InMemoryChannelBroker,
    NotificationFanout,
    NotificationFeed,
    SilentCuePlayer,
)
from app.services.notifications.feed import SEEN_IDS_FACTOR
from app.services.notifications.real import RedisChannelBroker
from app.services.store import Scope
from tests.conftest import ITEMS, make_settings

CUSTOMER = Scope.customer("cust-1")
RESTAURANT = Scope.restaurant("rest-1")


async def _publish(fanout, scope=CUSTOMER, n=1, kind=NotificationKind.STATUS_CHANGED):
    return [
        await fanout.publish(scope, kind, f"title {i}", f"message {i}")
        for i in range(n)
    ]


class TestFanout:
    def test_timestamps_strictly_increase(self, run, services):
        published = run(_publish(services.fanout, n=20))
        stamps = [n.created_at for n in published]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_recent_is_newest_first_and_bounded(self, run, services):
        published = run(_publish(services.fanout, n=5))
        recent = run(services.fanout.recent(CUSTOMER, limit=3))
        assert [n.id for n in recent] == [n.id for n in reversed(published)][:3]

    def test_recent_defaults_to_history_limit(self, run, store, broker):
        fanout = NotificationFanout(store, broker, make_settings(notification_history_limit=4))
        run(_publish(fanout, n=6))
        assert len(run(fanout.recent(CUSTOMER))) == 4

    def test_channels_are_isolated(self, run, services):
        run(_publish(services.fanout, scope=RESTAURANT, n=2))
        assert run(services.fanout.recent(CUSTOMER)) == []
        assert run(services.fanout.unread_count(RESTAURANT)) == 2

    def test_mark_read_is_idempotent(self, run, services):
        (notification,) = run(_publish(services.fanout))
        first = run(services.fanout.mark_read(notification.id))
        second = run(services.fanout.mark_read(notification.id))
        assert first.read_state == second.read_state == ReadState.READ
        assert run(services.fanout.unread_count(CUSTOMER)) == 0

    def test_mark_read_unknown(self, run, services):
        with pytest.raises(NotFoundError):
            run(services.fanout.mark_read("nope"))

    def test_mark_all_read_only_touches_snapshot(self, run, services):
        before = run(_publish(services.fanout, n=2))
        marked = run(services.fanout.mark_all_read(CUSTOMER))
        run(_publish(services.fanout))

        assert set(marked) == {n.id for n in before}
        assert run(services.fanout.unread_count(CUSTOMER)) == 1

    def test_comment_reply(self, run, services):
        notification = run(services.fanout.notify_comment_reply(
            "cust-1", "post-9", "Thanks for visiting!", restaurant_name="Golden Bowl"
        ))
        assert notification.kind == NotificationKind.COMMENT_REPLY
        assert notification.scope == CUSTOMER
        assert notification.blog_post_id == "post-9"
        assert notification.reply_content == "Thanks for visiting!"
        assert notification.title.startswith("Golden Bowl")

    def test_comment_reply_requires_content(self, run, services):
        with pytest.raises(ValidationError):
            run(services.fanout.notify_comment_reply("cust-1", "post-9", "   "))

    def test_no_rating_prompt_when_disabled(self, run, store, broker):
        services = build_services(store, broker, make_settings(rating_prompt_on_completion=False))
        order = run(services.ledger.create("cust-1", "rest-1", OrderType.DINE_IN, ITEMS, "cash"))
        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            run(services.ledger.transition(order.id, status, ActorRole.RESTAURANT_STAFF))
        kinds = {n.kind for n in run(services.fanout.recent(CUSTOMER))}
        assert NotificationKind.RATING_PROMPT not in kinds


class TestBroker:
    def test_filter_and_unsubscribe(self, run, services):
        broker = InMemoryChannelBroker()
        received = []

        async def collect(notification):
            received.append(notification.kind)

        async def scenario():
            handle = await broker.subscribe(CUSTOMER.topic, collect, [NotificationKind.COMMENT_REPLY])
            (status_change,) = await _publish(services.fanout)
            reply = await services.fanout.notify_comment_reply("cust-1", "p1", "hi")
            await broker.publish(CUSTOMER.topic, status_change)
            await broker.publish(CUSTOMER.topic, reply)
            await broker.unsubscribe(handle)
            await broker.publish(CUSTOMER.topic, reply)
            await broker.unsubscribe(handle)

        run(scenario())
        assert received == [NotificationKind.COMMENT_REPLY]
        assert broker.subscriber_count(CUSTOMER.topic) == 0

    def test_failing_subscriber_does_not_block_others(self, run, services, broker):
        received = []

        async def broken(notification):
            raise RuntimeError("socket closed")

        async def collect(notification):
            received.append(notification.id)

        async def scenario():
            await broker.subscribe(CUSTOMER.topic, broken)
            await broker.subscribe(CUSTOMER.topic, collect)
            return await _publish(services.fanout)

        (notification,) = run(scenario())
        assert received == [notification.id]


class FailingCue(BaseCuePlayer):
    async def play(self, notification):
        raise OSError("no audio device")


class TestFeed:
    def test_initial_view_is_bounded_and_silent(self, run, services, broker):
        cue = SilentCuePlayer()

        async def scenario():
            published = await _publish(services.fanout, n=5)
            feed = NotificationFeed(services.fanout, broker, CUSTOMER, cue_player=cue, limit=3)
            await feed.attach()
            await asyncio.sleep(0)
            await feed.detach()
            return published, feed

        published, feed = run(scenario())
        assert [n.id for n in feed.items] == [n.id for n in reversed(published)][:3]
        assert cue.played == []

    def test_live_events_prepend_rebound_and_cue(self, run, services, broker):
        cue = SilentCuePlayer()

        async def scenario():
            await _publish(services.fanout, n=3)
            async with NotificationFeed(services.fanout, broker, CUSTOMER, cue_player=cue, limit=3) as feed:
                (live,) = await _publish(services.fanout)
                await asyncio.sleep(0)
                return live, feed.items

        live, items = run(scenario())
        assert len(items) == 3
        assert items[0].id == live.id
        assert cue.played == [live.id]

    def test_duplicate_delivery_is_ignored(self, run, services, broker):
        async def scenario():
            async with NotificationFeed(services.fanout, broker, CUSTOMER) as feed:
                (notification,) = await _publish(services.fanout)
                await broker.publish(CUSTOMER.topic, notification)
                await broker.publish(CUSTOMER.topic, notification)
                return feed.items

        assert len(run(scenario())) == 1

    def test_event_during_initial_fetch_is_merged_once(self, run, store, broker, settings):
        class RacingFanout(NotificationFanout):
            """Publishes while the feed's history fetch is in flight."""

            async def recent(self, scope, limit=None):
                self.during = await self.publish(scope, NotificationKind.STATUS_CHANGED, "t", "during")
                history = await super().recent(scope, limit)
                self.after = await self.publish(scope, NotificationKind.STATUS_CHANGED, "t", "after")
                return history

        fanout = RacingFanout(store, broker, settings)
        cue = SilentCuePlayer()

        async def scenario():
            feed = NotificationFeed(fanout, broker, CUSTOMER, cue_player=cue)
            await feed.attach()
            await asyncio.sleep(0)
            await feed.detach()
            return feed.items

        items = run(scenario())
        assert [n.id for n in items] == [fanout.after.id, fanout.during.id]
        # Fetched history is not live; only the event missed by the fetch cues
        assert cue.played == [fanout.after.id]

    def test_cue_failure_is_swallowed(self, run, services, broker):
        async def scenario():
            async with NotificationFeed(services.fanout, broker, CUSTOMER, cue_player=FailingCue()) as feed:
                await _publish(services.fanout, n=2)
                await asyncio.sleep(0)
                return feed.items

        assert len(run(scenario())) == 2

    def test_detach_stops_delivery(self, run, services, broker):
        async def scenario():
            feed = NotificationFeed(services.fanout, broker, CUSTOMER)
            await feed.attach()
            await feed.detach()
            await _publish(services.fanout)
            return feed

        feed = run(scenario())
        assert feed.items == []
        assert not feed.attached
        assert broker.subscriber_count(CUSTOMER.topic) == 0

    def test_kind_filter(self, run, services, broker):
        async def scenario():
            kinds = [NotificationKind.COMMENT_REPLY]
            async with NotificationFeed(services.fanout, broker, CUSTOMER, kinds=kinds) as feed:
                await _publish(services.fanout)
                await services.fanout.notify_comment_reply("cust-1", "p1", "hello")
                return feed.items

        items = run(scenario())
        assert [n.kind for n in items] == [NotificationKind.COMMENT_REPLY]

    def test_read_state_through_feed(self, run, services, broker):
        async def scenario():
            async with NotificationFeed(services.fanout, broker, CUSTOMER) as feed:
                first, second = await _publish(services.fanout, n=2)
                await feed.mark_read(first.id)
                after_one = feed.unread_count
                marked = await feed.mark_all_read()
                return after_one, marked, feed.unread_count, second

        after_one, marked, after_all, second = run(scenario())
        assert after_one == 1
        assert marked == [second.id]
        assert after_all == 0

    def test_refetch_picks_up_missed_events(self, run, services, broker):
        async def scenario():
            feed = NotificationFeed(services.fanout, broker, CUSTOMER)
            await feed.attach()
            await feed.detach()
            await _publish(services.fanout, n=2)
            return await feed.refetch()

        assert len(run(scenario())) == 2

    def test_reattach_restores_view(self, run, services, broker):
        cue = SilentCuePlayer()

        async def scenario():
            for i in range(3):
                await services.fanout.notify_comment_reply("cust-1", f"p{i}", "thanks")
            feed = NotificationFeed(services.fanout, broker, CUSTOMER, cue_player=cue)
            first = await feed.attach()
            await feed.detach()
            (missed,) = await _publish(services.fanout)
            second = await feed.attach()
            await asyncio.sleep(0)
            await feed.detach()
            return first, second, missed

        first, second, missed = run(scenario())
        assert len(first) == 3
        assert len(second) == 4
        assert second[0].id == missed.id
        assert cue.played == []

    def test_dedup_memory_is_bounded(self, run, services, broker):
        async def scenario():
            async with NotificationFeed(services.fanout, broker, CUSTOMER, limit=5) as feed:
                published = await _publish(services.fanout, n=60)
                return feed, published

        feed, published = run(scenario())
        assert len(feed._seen) <= 5 * SEEN_IDS_FACTOR
        assert [n.id for n in feed.items] == [n.id for n in reversed(published)][:5]

    def test_redelivered_old_event_stays_out_of_full_view(self, run, services, broker):
        cue = SilentCuePlayer()

        async def scenario():
            async with NotificationFeed(services.fanout, broker, CUSTOMER, limit=2, cue_player=cue) as feed:
                published = await _publish(services.fanout, n=20)
                await asyncio.sleep(0)
                cue.played.clear()
                await broker.publish(CUSTOMER.topic, published[0])
                await asyncio.sleep(0)
                return feed.items, published

        items, published = run(scenario())
        assert cue.played == []
        assert [n.id for n in items] == [published[-1].id, published[-2].id]

    def test_ledger_events_reach_live_feed(self, run, services, broker, place_order):
        async def scenario():
            async with NotificationFeed(services.fanout, broker, RESTAURANT) as feed:
                order = await place_order()
                await services.ledger.transition(order.id, OrderStatus.CANCELLED, ActorRole.CUSTOMER)
                return order, feed.items

        order, items = run(scenario())
        assert [n.kind for n in items] == [NotificationKind.STATUS_CHANGED, NotificationKind.ORDER_CREATED]
        assert all(n.order_id == order.id for n in items)


class HangingPubSub:
    def __init__(self):
        self.closed = False

    async def subscribe(self, *topics):
        await asyncio.sleep(10)

    async def aclose(self):
        self.closed = True


class HangingRedis:
    def __init__(self):
        self.pubsubs = []

    def pubsub(self):
        pubsub = HangingPubSub()
        self.pubsubs.append(pubsub)
        return pubsub


class TestRedisBroker:
    def test_subscribe_timeout_closes_pubsub(self, run):
        client = HangingRedis()
        broker = RedisChannelBroker(make_settings(store_timeout_seconds=0.01), client=client)

        with pytest.raises(TransientError):
            run(broker.subscribe(CUSTOMER.topic, lambda notification: None))

        (pubsub,) = client.pubsubs
        assert pubsub.closed
