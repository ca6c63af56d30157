"""Notification payload builders for whitelist reconciliation events."""

from collections.abc import Iterable

from roster_control.core.notifications.sink import NotificationField, NotificationPayload

CATEGORY_SECURITY = "bot_logs"
CATEGORY_ROLE_WHITELIST = "role_whitelist"
CATEGORY_WHITELIST = "whitelist"


def _mention(external_id: str, display_name: str | None) -> str:
    if display_name:
        return f"{display_name} (<@{external_id}>)"
    return f"<@{external_id}>"


def build_security_upgrade_notification(
    *,
    external_id: str,
    display_name: str | None,
    tier: str,
    game_id: str | None,
    confidence: float,
    entry_id: int,
    previous_state: str,
) -> NotificationPayload:
    return NotificationPayload(
        title="Security Transition: Staff Whitelist Approved",
        description=(
            f"A previously withheld **{tier}** whitelist entry was approved after the "
            "member's account link reached full confidence."
        ),
        fields=[
            NotificationField("User", _mention(external_id, display_name), inline=True),
            NotificationField("Tier", tier, inline=True),
            NotificationField("Steam ID", game_id or "Unknown", inline=True),
            NotificationField("Link Confidence", f"{confidence:.2f}", inline=True),
            NotificationField("Previous State", previous_state, inline=True),
            NotificationField("Entry", f"#{entry_id}", inline=True),
        ],
        severity="warning",
    )


def build_role_change_notification(
    *,
    external_id: str,
    display_name: str | None,
    previous_tier: str | None,
    new_tier: str | None,
    game_id: str | None,
    confidence: float | None,
) -> NotificationPayload:
    if new_tier is None:
        change_type = "Revoked"
    elif previous_tier is None:
        change_type = "Granted"
    else:
        change_type = "Updated"

    fields = [
        NotificationField("User", _mention(external_id, display_name), inline=True),
        NotificationField("Previous Group", previous_tier or "None", inline=True),
        NotificationField("New Group", new_tier or "None", inline=True),
        NotificationField("Change Type", change_type, inline=True),
    ]
    if game_id:
        fields.append(NotificationField("Steam ID", game_id, inline=True))
        fields.append(NotificationField("Link Confidence", f"{confidence or 0:.2f}", inline=True))
    else:
        fields.append(NotificationField("Steam Link", "Not linked", inline=True))
        fields.append(
            NotificationField(
                "Access Status",
                "Pending Steam link" if new_tier else "No access",
                inline=True,
            )
        )

    return NotificationPayload(
        title="Whitelist Access Updated",
        description=(
            f"Role-based whitelist access changed for {display_name or external_id}"
        ),
        fields=fields,
        severity="whitelist_grant" if new_tier else "whitelist_revoke",
    )


def build_member_left_notification(
    *,
    external_id: str,
    display_name: str | None,
    revoked_count: int,
    game_ids: Iterable[str | None],
    tiers: Iterable[str],
) -> NotificationPayload:
    unique_game_ids = sorted({value for value in game_ids if value})
    unique_tiers = sorted(set(tiers))
    noun = "entry" if revoked_count == 1 else "entries"
    return NotificationPayload(
        title="Role-Based Whitelist Auto-Revocation",
        description=(
            f"{_mention(external_id, display_name)} left the Discord server. "
            f"Automatically revoked {revoked_count} role-based whitelist {noun}."
        ),
        fields=[
            NotificationField("Steam IDs", ", ".join(unique_game_ids) or "None"),
            NotificationField("Previous Roles", ", ".join(unique_tiers) or "None"),
            NotificationField("Note", "Manual grants (donations, seeding, etc.) were preserved."),
        ],
        severity="whitelist_revoke",
    )


def build_cleanup_summary_notification(
    *,
    guild_id: str | None,
    roster_size: int,
    subjects_revoked: int,
    entries_revoked: int,
    errors: int,
) -> NotificationPayload:
    return NotificationPayload(
        title="Departed Member Cleanup",
        description=(
            f"Revoked {entries_revoked} role-based whitelist entries for "
            f"{subjects_revoked} members no longer in the server."
        ),
        fields=[
            NotificationField("Guild", guild_id or "Unknown", inline=True),
            NotificationField("Roster Size", str(roster_size), inline=True),
            NotificationField("Errors", str(errors), inline=True),
        ],
        severity="warning" if errors else "info",
    )
