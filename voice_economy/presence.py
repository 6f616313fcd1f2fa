"""Presence provider — who is in which voice room right now.

The engine only depends on :class:`PresenceProvider`. The discord.py
implementation reads from the client's member/channel cache, so it needs
the ``guilds``, ``members`` and ``voice_states`` intents.
"""

from __future__ import annotations

from typing import Iterable, NamedTuple, Protocol

import discord


class RoomMember(NamedTuple):
    user_id: str
    room_id: str


class PresenceProvider(Protocol):
    async def get_member_room(self, guild_id: str, user_id: str) -> str | None:
        """The voice room the member is in, or None when not in voice."""

    async def get_room_category(self, guild_id: str, room_id: str) -> str | None:
        """The room's parent category id, or None for non-voice/uncategorized rooms."""

    async def list_room_members(
        self, guild_id: str, category_ids: Iterable[str],
    ) -> list[RoomMember]:
        """Non-system members present in voice rooms under *category_ids*."""

    async def list_guild_ids(self) -> list[str]:
        ...


class DiscordPresenceProvider:
    """:class:`PresenceProvider` backed by a connected ``discord.Client``."""

    def __init__(self, client: discord.Client, ignored_users: Iterable[str] = ()) -> None:
        self._client = client
        self._ignored = {str(u) for u in ignored_users}

    def _guild(self, guild_id: str) -> discord.Guild | None:
        return self._client.get_guild(int(guild_id))

    def is_ignored(self, member: discord.abc.User) -> bool:
        return member.bot or str(member.id) in self._ignored

    async def get_member_room(self, guild_id: str, user_id: str) -> str | None:
        guild = self._guild(guild_id)
        if guild is None:
            return None
        member = guild.get_member(int(user_id))
        if member is None or member.voice is None or member.voice.channel is None:
            return None
        return str(member.voice.channel.id)

    async def get_room_category(self, guild_id: str, room_id: str) -> str | None:
        guild = self._guild(guild_id)
        if guild is None:
            return None
        channel = guild.get_channel(int(room_id))
        if not isinstance(channel, discord.VoiceChannel) or channel.category_id is None:
            return None
        return str(channel.category_id)

    async def list_room_members(
        self, guild_id: str, category_ids: Iterable[str],
    ) -> list[RoomMember]:
        guild = self._guild(guild_id)
        if guild is None:
            return []
        tracked = {str(c) for c in category_ids}
        members: list[RoomMember] = []
        for channel in guild.voice_channels:
            if channel.category_id is None or str(channel.category_id) not in tracked:
                continue
            for member in channel.members:
                if self.is_ignored(member):
                    continue
                members.append(RoomMember(str(member.id), str(channel.id)))
        return members

    async def list_guild_ids(self) -> list[str]:
        return [str(g.id) for g in self._client.guilds]
