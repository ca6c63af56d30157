"""Pydantic schemas for role-change events and roster snapshots."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MemberSnapshot(BaseModel):
    """Member state captured when the event was produced."""

    model_config = ConfigDict(frozen=True)

    guild_id: str | None = None
    display_name: str | None = None
    tag: str | None = None
    held_tiers: frozenset[str] = Field(
        default_factory=frozenset,
        description="Every tier the member's current roles map to",
    )


class RoleChangeEvent(BaseModel):
    """A change in a member's derived tier."""

    subject_external_id: str = Field(min_length=1, max_length=50)
    previous_tier: str | None = None
    new_tier: str | None = None
    member: MemberSnapshot | None = None

    @field_validator("previous_tier", "new_tier", mode="before")
    @classmethod
    def _blank_tier_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RosterMember(BaseModel):
    """One entry of a guild roster snapshot, tier already derived."""

    external_id: str = Field(min_length=1, max_length=50)
    display_name: str | None = None
    tag: str | None = None
    is_bot: bool = False
    tier: str | None = None
    held_tiers: frozenset[str] = Field(default_factory=frozenset)
    guild_id: str | None = None

    def snapshot(self) -> MemberSnapshot:
        held = self.held_tiers or (frozenset({self.tier}) if self.tier else frozenset())
        return MemberSnapshot(
            guild_id=self.guild_id,
            display_name=self.display_name,
            tag=self.tag,
            held_tiers=held,
        )
