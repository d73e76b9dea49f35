# permissions.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional

from common import log
from contracts import Messenger

# Permission bit flags
PERMS = {
    "KICK_MEMBERS":     1 << 1,
    "BAN_MEMBERS":      1 << 2,
    "ADMINISTRATOR":    1 << 3,
    "MANAGE_GUILD":     1 << 5,
    "MANAGE_MESSAGES":  1 << 13,
    "MANAGE_ROLES":     1 << 28,
    "MODERATE_MEMBERS": 1 << 40,
}

# What "moderator" means here. Any one of these is enough.
MODERATOR_ANY_OF = [
    PERMS["ADMINISTRATOR"],
    PERMS["MANAGE_GUILD"],
    PERMS["MANAGE_MESSAGES"],
    PERMS["MODERATE_MEMBERS"],
    PERMS["KICK_MEMBERS"],
    PERMS["BAN_MEMBERS"],
    PERMS["MANAGE_ROLES"],
]


@dataclass
class Caller:
    """Who issued a command, and from where."""
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    user_id: Optional[str] = None
    # member permission bitset, serialized as a decimal string
    permissions: Optional[str] = None
    is_member: bool = True


def has_any_perm(perms_str: Optional[str], flags: Iterable[int]) -> bool:
    if not perms_str:
        return False
    try:
        p = int(perms_str)
    except (TypeError, ValueError):
        log().warn("perms.parse.fail", value=perms_str)
        return False
    return any((p & f) == f for f in flags)


def is_moderator_or_owner(caller: Caller, messenger: Messenger) -> bool:
    if not caller.guild_id or not caller.is_member:
        return False

    # 1) moderator-like permission: allow without any API call
    if has_any_perm(caller.permissions, MODERATOR_ANY_OF):
        return True

    # 2) otherwise, explicit server-owner check
    owner_id = messenger.fetch_guild_owner_id(caller.guild_id)
    return bool(owner_id) and bool(caller.user_id) and str(owner_id) == str(caller.user_id)
