"""
Identity link persistence.

Links associate a Discord account with a Steam account at a confidence score.
The store keeps exactly one ``is_primary`` link per Discord account: the link
with the highest confidence, ties broken by the most recent ``created_at``
(then ``id``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster_control.core.errors import InvalidConfidenceError
from roster_control.core.logging import get_logger
from roster_control.db.models import IdentityLink, LinkSource, as_utc

logger = get_logger(__name__)

# Confidence assigned when the caller does not supply one
DEFAULT_SOURCE_CONFIDENCE: dict[LinkSource, float] = {
    LinkSource.VERIFIED: 1.0,
    LinkSource.MANUAL: 1.0,
    LinkSource.SQUADJS: 1.0,
    LinkSource.IMPORT: 1.0,
    LinkSource.ADMIN: 0.7,
    LinkSource.TICKET: 0.3,
}


@dataclass(slots=True)
class LinkWriteResult:
    link: IdentityLink
    created: bool
    previous_confidence: float | None = None

    @property
    def confidence_changed(self) -> bool:
        return self.created or self.previous_confidence != self.link.confidence


def validate_confidence(confidence: float) -> float:
    if not 0.0 <= confidence <= 1.0:
        raise InvalidConfidenceError(confidence)
    return float(confidence)


def link_snapshot(link: IdentityLink | None) -> dict[str, Any] | None:
    if link is None:
        return None
    return {
        "id": link.id,
        "gameId": link.game_id,
        "confidence": link.confidence,
        "source": link.source.value,
        "isPrimary": link.is_primary,
    }


def _primary_sort_key(link: IdentityLink) -> tuple[float, Any, int]:
    return (link.confidence, as_utc(link.created_at), link.id or 0)


class IdentityLinkStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_links(
        self,
        external_id: str,
        *,
        for_update: bool = False,
    ) -> list[IdentityLink]:
        """Every link of one Discord account, strongest first."""
        stmt = (
            select(IdentityLink)
            .where(IdentityLink.external_id == external_id)
            .order_by(
                IdentityLink.confidence.desc(),
                IdentityLink.created_at.desc(),
                IdentityLink.id.desc(),
            )
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_primary_link(
        self,
        external_id: str,
        *,
        for_update: bool = False,
    ) -> IdentityLink | None:
        """
        Return the primary link with a game id, or ``None``.

        With ``for_update`` every link row of the account is locked, so a
        concurrent link write cannot change which row is primary mid-transaction.
        """
        links = await self.list_links(external_id, for_update=for_update)
        candidates = [link for link in links if link.game_id]
        if not candidates:
            return None
        flagged = [link for link in candidates if link.is_primary]
        return max(flagged or candidates, key=_primary_sort_key)

    async def find_by_game_id(self, game_id: str) -> list[IdentityLink]:
        result = await self.db.execute(
            select(IdentityLink)
            .where(IdentityLink.game_id == game_id)
            .order_by(IdentityLink.confidence.desc(), IdentityLink.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_or_update_link(
        self,
        external_id: str,
        game_id: str,
        confidence: float | None,
        source: LinkSource,
        *,
        force: bool = False,
        username: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LinkWriteResult:
        """
        Insert the ``(external_id, game_id)`` link or update it in place.

        An existing link's confidence is never lowered unless ``force`` is set.
        ``is_primary`` is recomputed across all of the account's links.
        """
        if confidence is None:
            confidence = DEFAULT_SOURCE_CONFIDENCE.get(source, 0.0)
        confidence = validate_confidence(confidence)

        links = await self.list_links(external_id, for_update=True)
        existing = next((link for link in links if link.game_id == game_id), None)

        if existing is None:
            link = IdentityLink(
                external_id=external_id,
                game_id=game_id,
                username=username,
                source=source,
                confidence=confidence,
                is_primary=False,
                metadata_=dict(metadata or {}),
            )
            self.db.add(link)
            await self.db.flush()
            links.append(link)
            result = LinkWriteResult(link=link, created=True)
        else:
            previous = existing.confidence
            if confidence >= previous or force:
                existing.confidence = confidence
                existing.source = source
            else:
                logger.info(
                    "identity_link_downgrade_ignored",
                    external_id=external_id,
                    game_id=game_id,
                    stored=previous,
                    requested=confidence,
                )
            if username:
                existing.username = username
            if metadata:
                existing.metadata_ = {**(existing.metadata_ or {}), **metadata}
            result = LinkWriteResult(link=existing, created=False, previous_confidence=previous)

        self._recompute_primary(links)
        await self.db.flush()
        return result

    async def remove_link(self, external_id: str, game_id: str) -> bool:
        """Hard-delete one link (administrative unlink only)."""
        links = await self.list_links(external_id, for_update=True)
        target = next((link for link in links if link.game_id == game_id), None)
        if target is None:
            return False
        await self.db.delete(target)
        links.remove(target)
        self._recompute_primary(links)
        await self.db.flush()
        return True

    @staticmethod
    def _recompute_primary(links: list[IdentityLink]) -> None:
        candidates = [link for link in links if link.game_id]
        primary = max(candidates, key=_primary_sort_key) if candidates else None
        for link in links:
            link.is_primary = link is primary
