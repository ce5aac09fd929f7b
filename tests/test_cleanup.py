from __future__ import annotations

import sqlite3
import unittest
from unittest import mock

from inactivitybot.cogs.cleanup import CleanupCog
from inactivitybot.models import users

from fakes import NOW, FakeBot, FakeGuild, FakeMember, TempDatabase, http_error, make_settings


class CleanupCogTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = TempDatabase().__enter__()
        self.guild = FakeGuild([FakeMember(1), FakeMember(2), FakeMember(3, bot=True)])
        self.bot = FakeBot(make_settings())
        self.bot.guild = self.guild
        self.cog = CleanupCog(self.bot)
        for user_id in (1, 2, 4, 5):
            users.record_message(user_id, NOW)

    def tearDown(self):
        self.tmp.__exit__(None, None, None)

    async def test_deletes_exactly_the_departed(self):
        deleted = await self.cog.run(self.guild)
        self.assertEqual(deleted, 2)
        self.assertEqual(users.list_user_ids(), [1, 2])

    async def test_nothing_to_delete(self):
        self.guild.add(FakeMember(4))
        self.guild.add(FakeMember(5))
        self.assertEqual(await self.cog.run(self.guild), 0)
        self.assertEqual(users.count_users(), 4)

    async def test_member_fetch_failure_deletes_nothing(self):
        self.guild.fetch_members_error = http_error()
        with self.assertLogs("inactivitybot.cogs.cleanup", level="ERROR"):
            deleted = await self.cog.run(self.guild)
        self.assertEqual(deleted, 0)
        self.assertEqual(users.count_users(), 4)

    async def test_row_failure_does_not_stop_sweep(self):
        real_delete = users.delete_user

        def flaky(user_id):
            if user_id == 4:
                raise sqlite3.OperationalError("locked")
            return real_delete(user_id)

        with mock.patch.object(users, "delete_user", side_effect=flaky):
            with self.assertLogs("inactivitybot.cogs.cleanup", level="ERROR"):
                deleted = await self.cog.run(self.guild)

        self.assertEqual(deleted, 1)
        self.assertEqual(users.list_user_ids(), [1, 2, 4])

    async def test_scheduled_sweep_uses_configured_guild(self):
        await self.cog._cleanup_loop.coro(self.cog)
        self.assertEqual(users.list_user_ids(), [1, 2])

    async def test_scheduled_sweep_without_guild_is_skipped(self):
        self.bot.guild = None
        with self.assertLogs("inactivitybot.cogs.cleanup", level="WARNING"):
            await self.cog._cleanup_loop.coro(self.cog)
        self.assertEqual(users.count_users(), 4)


if __name__ == "__main__":
    unittest.main()
