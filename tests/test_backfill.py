from __future__ import annotations

import unittest
from unittest import mock

from inactivitybot.cogs import backfill as backfill_cog
from inactivitybot.cogs.backfill import BackfillCog
from inactivitybot.cogs.inactivity import InactivityCog
from inactivitybot.models import users
from inactivitybot.utils.backfill import collect_latest_authors, history_targets, in_watched_channel

from fakes import (
    CHANNEL_A,
    CHANNEL_B,
    NOW,
    WARNING_CHANNEL_ID,
    FakeBot,
    FakeChannel,
    FakeForum,
    FakeGuild,
    FakeMember,
    TempDatabase,
    days_ago,
    forbidden,
    make_message,
    make_settings,
    user,
)


class CollectLatestAuthorsTests(unittest.IsolatedAsyncioTestCase):
    async def test_pages_until_cutoff(self):
        channel = FakeChannel(
            CHANNEL_A,
            [
                make_message(user(1), days_ago(1)),
                make_message(user(9, bot=True), days_ago(2)),
                make_message(user(2), days_ago(5)),
                make_message(user(1), days_ago(8)),
                make_message(user(3), days_ago(40)),
                make_message(user(4), days_ago(45)),
                make_message(user(5), days_ago(50)),
            ],
        )
        latest = {}
        seen = await collect_latest_authors(channel, since=days_ago(31), latest=latest, page_size=2)

        self.assertEqual(seen, 4)
        self.assertEqual(latest, {1: days_ago(1), 2: days_ago(5)})
        self.assertEqual(len(channel.history_calls), 3)
        self.assertIsNone(channel.history_calls[0]["before"])
        self.assertIsNotNone(channel.history_calls[1]["before"])

    async def test_short_page_ends_walk(self):
        channel = FakeChannel(CHANNEL_A, [make_message(user(i), days_ago(i)) for i in range(1, 4)])
        latest = {}
        await collect_latest_authors(channel, since=days_ago(31), latest=latest, page_size=2)
        self.assertEqual(len(channel.history_calls), 2)
        self.assertEqual(set(latest), {1, 2, 3})

    async def test_keeps_newest_across_channels(self):
        latest = {7: days_ago(3)}
        channel = FakeChannel(CHANNEL_B, [make_message(user(7), days_ago(6)), make_message(user(7), days_ago(2))])
        await collect_latest_authors(channel, since=days_ago(31), latest=latest, page_size=100)
        self.assertEqual(latest[7], days_ago(2))

    async def test_webhook_messages_are_ignored(self):
        channel = FakeChannel(CHANNEL_A, [make_message(user(7), days_ago(1), webhook_id=5)])
        latest = {}
        await collect_latest_authors(channel, since=days_ago(31), latest=latest)
        self.assertEqual(latest, {})

    def test_in_watched_channel(self):
        watched = frozenset({CHANNEL_A})
        self.assertTrue(in_watched_channel(FakeChannel(CHANNEL_A), watched))
        self.assertTrue(in_watched_channel(FakeChannel(500, parent_id=CHANNEL_A), watched))
        self.assertFalse(in_watched_channel(FakeChannel(500, parent_id=CHANNEL_B), watched))

    def test_history_targets_include_threads(self):
        thread = FakeChannel(500, parent_id=CHANNEL_A)
        text = FakeChannel(CHANNEL_A)
        text.threads = [thread]
        self.assertEqual(history_targets(text), [text, thread])
        self.assertEqual(history_targets(FakeForum(CHANNEL_B, [thread])), [thread])
        self.assertEqual(history_targets(FakeForum(CHANNEL_B)), [])


class BackfillCogTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = TempDatabase().__enter__()
        patcher = mock.patch.object(backfill_cog, "DELAY_BETWEEN_CHANNELS", 0)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.channel_a = FakeChannel(
            CHANNEL_A,
            [
                make_message(user(1), days_ago(1)),
                make_message(user(50, bot=True), days_ago(2)),
                make_message(user(2), days_ago(5)),
                make_message(user(1), days_ago(8)),
                make_message(user(3), days_ago(40)),
                make_message(user(4), days_ago(45)),
            ],
        )
        self.channel_b = FakeChannel(CHANNEL_B, [make_message(user(5), days_ago(1))], readable=False)
        self.guild = FakeGuild(
            [
                FakeMember(1, joined_at=days_ago(90)),
                FakeMember(2, joined_at=days_ago(80)),
                FakeMember(3, joined_at=days_ago(200)),
                FakeMember(6, joined_at=days_ago(100)),
                FakeMember(50, bot=True, joined_at=days_ago(100)),
            ]
        )
        self.bot = FakeBot(make_settings(), [self.channel_a, self.channel_b])
        self.cog = BackfillCog(self.bot)

    def tearDown(self):
        self.tmp.__exit__(None, None, None)

    async def test_run_seeds_table_from_history_and_members(self):
        users.insert_if_absent(2, joined_at=days_ago(300))

        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR") as logs:
            stats = await self.cog.run(self.guild, now=NOW)

        self.assertTrue(any("backfill.channel.skipped" in line for line in logs.output))
        self.assertEqual(stats.channels_scanned, 1)
        self.assertEqual(stats.channels_skipped, [CHANNEL_B])
        self.assertEqual(stats.messages_seen, 4)
        self.assertEqual(stats.authors_updated, 2)
        self.assertEqual(stats.members_seeded, 2)

        self.assertEqual(users.get_user(1).last_message, days_ago(1))
        rec2 = users.get_user(2)
        self.assertEqual(rec2.last_message, days_ago(5))
        self.assertEqual(rec2.joined_at, days_ago(300))

        rec3 = users.get_user(3)
        self.assertIsNone(rec3.last_message)
        self.assertEqual(rec3.joined_at, days_ago(200))
        self.assertIsNone(users.get_user(6).last_message)

        self.assertIsNone(users.get_user(50))
        self.assertIsNone(users.get_user(5))
        self.assertIsNone(users.get_user(4))

    async def test_unreachable_channel_does_not_abort_scan(self):
        self.bot.channels.pop(CHANNEL_B)
        self.channel_a.readable = True

        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR"):
            stats = await self.cog.run(self.guild, now=NOW)

        self.assertEqual(stats.channels_skipped, [CHANNEL_B])
        self.assertEqual(users.get_user(1).last_message, days_ago(1))

    async def test_forbidden_history_skips_channel(self):
        async def _denied(**kwargs):
            raise forbidden()
            yield  # pragma: no cover

        self.channel_b.readable = True
        self.channel_b.history = _denied

        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR"):
            stats = await self.cog.run(self.guild, now=NOW)

        self.assertIn(CHANNEL_B, stats.channels_skipped)
        self.assertEqual(stats.channels_scanned, 1)

    async def test_channel_without_history_is_skipped(self):
        category = FakeForum(CHANNEL_A)
        text = FakeChannel(CHANNEL_B, [make_message(user(1), days_ago(1))])
        guild = FakeGuild([FakeMember(1, joined_at=days_ago(90)), FakeMember(2, joined_at=days_ago(90))])
        cog = BackfillCog(FakeBot(make_settings(), [category, text]))

        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR") as logs:
            stats = await cog.run(guild, now=NOW)

        self.assertTrue(any("no message history" in line for line in logs.output))
        self.assertEqual(stats.channels_skipped, [CHANNEL_A])
        self.assertEqual(stats.channels_scanned, 1)
        self.assertEqual(users.get_user(1).last_message, days_ago(1))
        self.assertIsNotNone(users.get_user(2))
        self.assertEqual(stats.members_seeded, 1)

    async def test_forum_posts_are_scanned(self):
        post = FakeChannel(500, [make_message(user(1), days_ago(2))], parent_id=CHANNEL_A)
        other = FakeChannel(501, [make_message(user(2), days_ago(3))], parent_id=CHANNEL_A)
        forum = FakeForum(CHANNEL_A, [post, other])
        bot = FakeBot(make_settings(watched_channel_ids=frozenset({CHANNEL_A})), [forum])

        stats = await BackfillCog(bot).run(FakeGuild(), now=NOW)

        self.assertEqual(stats.channels_scanned, 1)
        self.assertEqual(stats.messages_seen, 2)
        self.assertEqual(users.get_user(1).last_message, days_ago(2))
        self.assertEqual(users.get_user(2).last_message, days_ago(3))

    async def test_failing_thread_does_not_lose_parent(self):
        async def _denied(**kwargs):
            raise forbidden()
            yield  # pragma: no cover

        thread = FakeChannel(500, parent_id=CHANNEL_A)
        thread.history = _denied
        self.channel_a.threads = [thread]

        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR"):
            stats = await self.cog.run(self.guild, now=NOW)

        self.assertEqual(stats.channels_skipped, [CHANNEL_B])
        self.assertEqual(users.get_user(1).last_message, days_ago(1))

    async def test_member_fetch_failure_keeps_message_updates(self):
        self.guild.fetch_members_error = forbidden()
        with self.assertLogs("inactivitybot.cogs.backfill", level="ERROR"):
            stats = await self.cog.run(self.guild, now=NOW)
        self.assertEqual(stats.members_seeded, 0)
        self.assertEqual(users.get_user(2).last_message, days_ago(5))
        self.assertIsNone(users.get_user(6))

    async def test_recent_poster_found_by_backfill_is_not_warned(self):
        t0 = days_ago(10)
        channel = FakeChannel(CHANNEL_A, [make_message(user(70), t0)])
        warn_channel = FakeChannel(WARNING_CHANNEL_ID)
        member = FakeMember(70, roles=[30], joined_at=days_ago(400))
        guild = FakeGuild([member])
        bot = FakeBot(make_settings(watched_channel_ids=frozenset({CHANNEL_A})), [channel, warn_channel])

        await BackfillCog(bot).run(guild, now=NOW)
        self.assertEqual(users.get_user(70).last_message, t0)

        stats = await InactivityCog(bot).run(guild, now=NOW)
        self.assertEqual(stats.candidates, 0)
        warn_channel.send.assert_not_awaited()
        member.remove_roles.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
