"""
Per-image emoji reactions.

Only the two idempotent primitives live here; whether a click adds or
removes is decided by the caller from the current membership.
"""
from .models import ImageRecord

REACTION_EMOJIS = ("❤️", "😂", "🔥", "✨", "🎨")


def add_reaction(record: ImageRecord, emoji: str, player_id: str) -> bool:
    """Record `player_id` reacting with `emoji`. Returns False if already there."""
    users = record.reaction_users.setdefault(emoji, [])
    if player_id in users:
        return False
    users.append(player_id)
    record.reactions[emoji] = len(users)
    return True


def remove_reaction(record: ImageRecord, emoji: str, player_id: str) -> bool:
    users = record.reaction_users.get(emoji, [])
    if player_id not in users:
        return False
    users.remove(player_id)
    record.reaction_users[emoji] = users
    record.reactions[emoji] = len(users)
    return True


def has_reacted(record: ImageRecord, emoji: str, player_id: str) -> bool:
    return player_id in record.reaction_users.get(emoji, [])


def get_reaction_counts(record: ImageRecord) -> dict[str, int]:
    # counts for the whole palette, zero-filled for the UI badges
    return {e: len(record.reaction_users.get(e, [])) for e in REACTION_EMOJIS}


def get_user_reactions(record: ImageRecord, player_id: str) -> dict[str, bool]:
    return {e: has_reacted(record, e, player_id) for e in REACTION_EMOJIS}
