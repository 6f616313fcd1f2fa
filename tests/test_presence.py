"""Tests for the discord.py presence provider."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import discord
import pytest

from voice_economy.presence import DiscordPresenceProvider, RoomMember


def _member(member_id: int, channel=None, bot: bool = False):
    voice = SimpleNamespace(channel=channel) if channel is not None else None
    return SimpleNamespace(id=member_id, bot=bot, voice=voice)


def _voice_channel(channel_id: int, category_id: int | None):
    channel = MagicMock(spec=discord.VoiceChannel)
    channel.id = channel_id
    channel.category_id = category_id
    channel.members = []
    return channel


@pytest.fixture
def guild():
    tracked = _voice_channel(10, 100)
    lounge = _voice_channel(20, 200)
    loose = _voice_channel(30, None)
    alice = _member(1, tracked)
    bot = _member(2, tracked, bot=True)
    muted = _member(3, tracked)
    carol = _member(4, lounge)
    tracked.members = [alice, bot, muted]
    lounge.members = [carol]

    members = {m.id: m for m in (alice, bot, muted, carol, _member(5))}
    channels = {c.id: c for c in (tracked, lounge, loose)}
    channels[40] = MagicMock(spec=discord.TextChannel)
    return SimpleNamespace(
        id=1,
        voice_channels=[tracked, lounge, loose],
        get_member=members.get,
        get_channel=channels.get,
    )


@pytest.fixture
def provider(guild) -> DiscordPresenceProvider:
    client = SimpleNamespace(guilds=[guild], get_guild={1: guild}.get)
    return DiscordPresenceProvider(client, ignored_users=["3"])


class TestDiscordPresenceProvider:
    async def test_member_room(self, provider: DiscordPresenceProvider):
        assert await provider.get_member_room("1", "1") == "10"
        assert await provider.get_member_room("1", "5") is None
        assert await provider.get_member_room("1", "77") is None
        assert await provider.get_member_room("2", "1") is None

    async def test_room_category(self, provider: DiscordPresenceProvider):
        assert await provider.get_room_category("1", "10") == "100"
        assert await provider.get_room_category("1", "30") is None
        assert await provider.get_room_category("1", "40") is None

    async def test_list_room_members_filters(self, provider: DiscordPresenceProvider):
        members = await provider.list_room_members("1", ["100"])
        assert members == [RoomMember("1", "10")]

    async def test_list_guild_ids(self, provider: DiscordPresenceProvider):
        assert await provider.list_guild_ids() == ["1"]
