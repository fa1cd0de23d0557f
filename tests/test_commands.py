import asyncio
from datetime import timedelta
from types import SimpleNamespace
from typing import List, Optional

from swabbot.bot import (
    ClanBot,
    clamp_limit,
    format_duration_ms,
    setup_commands,
)
from swabbot.config import BotConfig
from swabbot.models import init_db, staff_mentions, upsert_member, utcnow_naive
from swabbot.roat import PlayerStats, WarfareResult
from tests.fakes import FakeChannel, FakeGuild, FakeMember, FakeNotifier, FakeRoat


class Permissions:
    def __init__(self, admin: bool):
        self.administrator = admin
        self.manage_guild = admin


class CommandResponse:
    def __init__(self):
        self.message: Optional[str] = None
        self.messages: List[str] = []
        self.ephemeral = None
        self.deferred = False

    def is_done(self):
        return self.deferred or bool(self.messages)

    async def send_message(self, content=None, ephemeral=False, **kwargs):
        self.message = content
        self.messages.append(content)
        self.ephemeral = ephemeral

    async def defer(self, ephemeral=False, thinking=False):
        self.deferred = True


class CommandFollowup:
    def __init__(self):
        self.message: Optional[str] = None
        self.messages: List[str] = []
        self.embed = None
        self.ephemeral = None

    async def send(self, content=None, embed=None, ephemeral=False, **kwargs):
        self.message = content
        self.messages.append(content)
        self.embed = embed
        self.ephemeral = ephemeral


class CommandUser:
    def __init__(self, user_id: int, display_name="Admin", admin=True):
        self.id = user_id
        self.display_name = display_name
        self.guild_permissions = Permissions(admin)


class CommandInteraction:
    def __init__(self, guild, user, channel_id=555):
        self.guild = guild
        self.user = user
        self.channel_id = channel_id
        self.response = CommandResponse()
        self.followup = CommandFollowup()


def make_bot(tmp_path, client=None):
    config = BotConfig(token="dummy", database_path=str(tmp_path / "swab.db"))
    models = init_db(config.database_path)
    return ClanBot(config, models=models, client=client or FakeRoat())


def capture_commands(tree):
    captured = {}

    def command(*args, **kwargs):
        def decorator(func):
            captured[kwargs.get("name") or func.__name__] = func
            return func

        return decorator

    tree.command = command
    tree.error = lambda *args, **kwargs: (lambda func: func)
    return captured


def make_commands(tmp_path, client=None):
    bot = make_bot(tmp_path, client)
    commands = capture_commands(bot.tree)
    asyncio.run(setup_commands(bot))
    return bot, commands


def make_interaction(admin=True, user_id=1):
    guild = SimpleNamespace(id=999, name="TestGuild")
    return CommandInteraction(guild, CommandUser(user_id, admin=admin))


def test_format_duration_ms():
    assert format_duration_ms(0) == "0s"
    assert format_duration_ms(59_999) == "59s"
    assert format_duration_ms(3_600_000 + 5 * 60_000) == "1h 5m"
    assert format_duration_ms(-10) == "0s"


def test_clamp_limit():
    assert clamp_limit(None) == 10
    assert clamp_limit(0) == 1
    assert clamp_limit(100) == 25


def test_add_stores_baseline(tmp_path):
    client = FakeRoat()
    client.set_player("Swab Lord", kills=50, deaths=10, jad_kills=2)
    bot, commands = make_commands(tmp_path, client)
    interaction = make_interaction()

    asyncio.run(commands["add"](interaction, "Swab Lord"))

    assert "added to the database" in interaction.followup.message
    assert "Kills: **50**" in interaction.followup.message
    baseline = bot.store.find("swab lord")
    assert (baseline.kills, baseline.deaths, baseline.approver) == (50, 10, "Admin")


def test_add_duplicate_is_rejected(tmp_path):
    client = FakeRoat()
    client.set_player("Swab Lord", kills=50, deaths=10)
    bot, commands = make_commands(tmp_path, client)
    asyncio.run(commands["add"](make_interaction(), "Swab Lord"))
    client.set_player("Swab Lord", kills=99, deaths=10)

    interaction = make_interaction()
    asyncio.run(commands["add"](interaction, "swab lord"))

    assert interaction.response.message == "⚠️ **swab lord** already added!"
    assert bot.store.find("Swab Lord").kills == 50


def test_add_unknown_player(tmp_path):
    bot, commands = make_commands(tmp_path)
    interaction = make_interaction()

    asyncio.run(commands["add"](interaction, "ghost"))

    assert "NOT FOUND" in interaction.followup.message
    assert bot.store.get("ghost") is None


def test_add_upstream_failure(tmp_path):
    bot, commands = make_commands(tmp_path, FakeRoat(should_fail=True))
    interaction = make_interaction()

    asyncio.run(commands["add"](interaction, "bob"))

    assert interaction.followup.message == "❌ ERROR WHILE SAVING. PLEASE TRY AGAIN."
    assert bot.store.get("bob") is None


def test_check_reports_progress(tmp_path):
    client = FakeRoat()
    client.set_player("Bob", kills=50, deaths=10)
    bot, commands = make_commands(tmp_path, client)
    asyncio.run(commands["add"](make_interaction(), "Bob"))
    client.set_player("Bob", kills=73, deaths=12)

    interaction = make_interaction()
    asyncio.run(commands["check"](interaction, "bob"))

    message = interaction.followup.message
    assert "Progress check for Bob" in message
    assert "First tracked **50**, Now **73**, Change: **+23**" in message
    assert "First tracked **10**, Now **12**, Change: **+2**" in message


def test_check_untracked_player(tmp_path):
    _, commands = make_commands(tmp_path)
    interaction = make_interaction()

    asyncio.run(commands["check"](interaction, "nobody"))

    assert interaction.followup.message == "❌ NO TRACKING FOUND FOR **nobody**"


def test_lookup_shows_kdr(tmp_path):
    client = FakeRoat()
    client.set_player("Bob", kills=5, deaths=9, elo=1100)
    _, commands = make_commands(tmp_path, client)
    interaction = make_interaction()

    asyncio.run(commands["lookup"](interaction, "Bob"))

    assert "**5** kills and **9** deaths" in interaction.followup.message
    assert "NEGATIVE KDR" in interaction.followup.message
    assert client.requested == [("Bob", False)]


def test_player_sends_embed(tmp_path):
    client = FakeRoat()
    client.set_player("Bob", kills=20, deaths=10, clan_rank_name="General")
    _, commands = make_commands(tmp_path, client)
    interaction = make_interaction()

    asyncio.run(commands["player"](interaction, "Bob"))

    fields = {field.name: field.value for field in interaction.followup.embed.fields}
    assert fields["📊 K/D"] == "2.0"
    assert fields["🏰 Clan Rank"] == "General"


def test_jadandskotizo(tmp_path):
    client = FakeRoat()
    client.set_player("Bob", jad_kills=3, skotizo_kills=8)
    _, commands = make_commands(tmp_path, client)
    interaction = make_interaction()

    asyncio.run(commands["jadandskotizo"](interaction, "Bob"))

    assert "TzTok-Jad Kills: **3**" in interaction.followup.message
    assert "Skotizo Kills: **8**" in interaction.followup.message


def test_weekly_after_reset_shows_zeros(tmp_path):
    bot, commands = make_commands(tmp_path)
    for name, before, after in (("alice", 100, 110), ("bob", 20, 25)):
        upsert_member(bot.models, PlayerStats(name, kills=after, deaths=0, elo=0))
        bot.ledger.apply_live_total(name, before)
        bot.ledger.apply_live_total(name, after)

    interaction = make_interaction()
    asyncio.run(commands["weekly"](interaction))
    assert "alice: **10** kills" in interaction.response.message

    asyncio.run(commands["resetweekly"](make_interaction()))
    interaction = make_interaction()
    asyncio.run(commands["weekly"](interaction))

    assert "alice: **0** kills" in interaction.response.message
    assert "bob: **0** kills" in interaction.response.message


def test_resetweekly_requires_admin(tmp_path):
    bot, commands = make_commands(tmp_path)
    bot.ledger.apply_live_total("alice", 100)
    bot.ledger.apply_live_total("alice", 104)
    interaction = make_interaction(admin=False)

    asyncio.run(commands["resetweekly"](interaction))

    assert interaction.response.message == "You do not have permission to use this command."
    assert interaction.response.ephemeral is True
    assert bot.ledger.top_n() == [("alice", 4)]


def test_topkillers_after_reset_shows_zeros(tmp_path):
    bot, commands = make_commands(tmp_path)
    for name, before, after in (("alice", 100, 110), ("bob", 20, 25)):
        upsert_member(bot.models, PlayerStats(name, kills=after, deaths=0, elo=0))
        bot.ledger.apply_live_total(name, before)
        bot.ledger.apply_live_total(name, after)

    before_reset = make_interaction()
    asyncio.run(commands["topkillers"](before_reset))
    assert "alice: **10** kills" in before_reset.response.message

    asyncio.run(commands["resetweekly"](make_interaction()))
    interaction = make_interaction()
    asyncio.run(commands["topkillers"](interaction))

    lines = interaction.response.message.splitlines()[1:]
    assert lines
    assert all(line.endswith(": **0** kills") for line in lines)


def test_alltimekillers_uses_member_snapshot(tmp_path):
    bot, commands = make_commands(tmp_path)
    upsert_member(bot.models, PlayerStats("alice", kills=300, deaths=0, elo=0))
    upsert_member(bot.models, PlayerStats("bob", kills=500, deaths=0, elo=0))
    interaction = make_interaction()

    asyncio.run(commands["alltimekillers"](interaction, 1))

    assert "bob: **500** kills" in interaction.response.message
    assert "alice" not in interaction.response.message


def test_checkvoice_includes_open_session(tmp_path):
    bot, commands = make_commands(tmp_path)
    member = FakeMember(id=7, display_name="Talker")
    bot.voice.handle_transition(
        7, 999, None, 5, now=utcnow_naive() - timedelta(minutes=10)
    )
    interaction = make_interaction()

    asyncio.run(commands["checkvoice"](interaction, member))

    assert "**Talker** spent **10m" in interaction.response.message


def test_topvoice_lists_users(tmp_path):
    bot, commands = make_commands(tmp_path)
    now = utcnow_naive()
    bot.voice.handle_transition(7, 999, None, 5, now=now - timedelta(hours=1), display_name="Talker")
    bot.voice.handle_transition(8, 999, None, 5, now=now - timedelta(minutes=5), display_name="Quiet")
    interaction = make_interaction()

    asyncio.run(commands["topvoice"](interaction))

    lines = interaction.response.message.splitlines()
    assert "Talker" in lines[1]
    assert "Quiet" in lines[2]


def test_topvoice_empty(tmp_path):
    _, commands = make_commands(tmp_path)
    interaction = make_interaction()

    asyncio.run(commands["topvoice"](interaction))

    assert "Nobody has been in voice this week." in interaction.response.message


def test_link_and_remove_staff(tmp_path):
    bot, commands = make_commands(tmp_path)
    staff = FakeMember(id=42, display_name="Mod")

    link = make_interaction()
    asyncio.run(commands["linkusername"](link, staff, "Mod Swab"))
    assert link.response.message == "🔗 Linked **Mod Swab** to <@42>."
    assert staff_mentions(bot.models) == {"mod swab": 42}

    remove = make_interaction()
    asyncio.run(commands["removelink"](remove, "MOD SWAB"))
    assert remove.response.message == "🗑️ Removed link for **MOD SWAB**."
    assert staff_mentions(bot.models) == {}

    missing = make_interaction()
    asyncio.run(commands["removelink"](missing, "Mod Swab"))
    assert missing.response.message == "❌ No link found for **Mod Swab**."


def test_linkusername_requires_admin(tmp_path):
    bot, commands = make_commands(tmp_path)
    interaction = make_interaction(admin=False)

    asyncio.run(commands["linkusername"](interaction, FakeMember(id=42), "Mod Swab"))

    assert staff_mentions(bot.models) == {}


def test_testwarfare_posts_to_current_channel(tmp_path):
    client = FakeRoat(
        warfare=WarfareResult(
            created_at=utcnow_naive(), winner_clan="Swab", loser_clan=None, total_kills=9
        )
    )
    bot, commands = make_commands(tmp_path, client)
    notifier = FakeNotifier()
    bot.poller.notifier = notifier
    interaction = make_interaction()

    asyncio.run(commands["testwarfare"](interaction))

    assert interaction.followup.message == "Posted the latest warfare result."
    assert notifier.sent[0][0] == 555


def test_voice_state_update_tracks_members(tmp_path):
    bot, _ = make_commands(tmp_path)
    guild = FakeGuild(id=999)
    member = FakeMember(id=7, display_name="Talker", guild=guild)
    joined = SimpleNamespace(channel=FakeChannel(id=5))
    idle = SimpleNamespace(channel=None)

    asyncio.run(bot.on_voice_state_update(member, idle, joined))

    activity = bot.models.VoiceActivity
    record = activity.get(activity.user_id == 7)
    assert record.joined_at is not None
    assert record.display_name == "Talker"

    robot = FakeMember(id=8, bot=True, guild=guild)
    asyncio.run(bot.on_voice_state_update(robot, idle, joined))
    assert activity.get_or_none(activity.user_id == 8) is None


def test_reconcile_voice_reads_channel_members(tmp_path):
    bot, _ = make_commands(tmp_path)
    channel = FakeChannel(id=5, members=[FakeMember(id=7), FakeMember(id=8, bot=True)])
    guild = FakeGuild(id=999, voice_channels=[channel])

    assert bot.reconcile_voice(guild) == (1, 0)
