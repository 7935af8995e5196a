from typing import Iterable

from giftbot.gateway import MemberInfo


def eligible_participants(
    members: Iterable[MemberInfo],
    celebrant_id: int,
    bot_user_id: int | None = None,
) -> list[int]:
    """Members who can see the channel, excluding bots and the celebrant."""
    seen: set[int] = set()
    participants: list[int] = []
    for member in members:
        if member.bot or not member.can_view:
            continue
        if member.user_id in (celebrant_id, bot_user_id):
            continue
        if member.user_id in seen:
            continue
        seen.add(member.user_id)
        participants.append(member.user_id)
    return participants


async def resolve_participants(gateway, channel_id: int, celebrant_id: int) -> list[int]:
    members = await gateway.list_channel_members(channel_id)
    return eligible_participants(members, celebrant_id, gateway.bot_user_id)
