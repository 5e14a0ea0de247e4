"""Discord alerts for settlement outcomes that need an operator."""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp
import discord

from .models import RequestStatus, SettlementEvent, SettlementRequest

_LOGGER = logging.getLogger(__name__)

_EVENT_COLORS = {
    "completed": discord.Color.green(),
    "retryable_failure": discord.Color.yellow(),
    "ambiguous": discord.Color.dark_red(),
    "rejected": discord.Color.red(),
}

_EVENT_TITLES = {
    "completed": "settled",
    "retryable_failure": "left pending",
    "ambiguous": "needs reconciliation",
    "rejected": "rejected",
}


def build_request_embed(request: SettlementRequest, event: Optional[SettlementEvent] = None) -> discord.Embed:
    """Render an embed describing a settlement request."""

    suffix = f" {_EVENT_TITLES.get(event.name, event.name)}" if event else ""
    color = _EVENT_COLORS.get(event.name) if event else None
    if color is None:
        color = discord.Color.green() if request.status is RequestStatus.COMPLETED else discord.Color.light_grey()

    embed = discord.Embed(
        title=f"{request.kind.value.title()} #{request.id}{suffix}",
        color=color,
    )
    embed.add_field(name="Amount", value=f"{request.amount} {request.currency}", inline=True)
    embed.add_field(name="Chain", value=request.blockchain, inline=True)
    if request.user_id is not None:
        embed.add_field(name="User", value=str(request.user_id), inline=True)
    embed.add_field(name="Recipient", value=request.to or "missing", inline=False)
    embed.add_field(name="Status", value=request.status.value.title(), inline=True)
    embed.add_field(name="Created", value=discord.utils.format_dt(request.created_at, style="R"), inline=True)
    if request.settled_amount is not None:
        embed.add_field(
            name="Settled", value=f"{request.settled_amount} {request.settled_currency}", inline=True
        )
    if request.tx_hash:
        embed.add_field(name="Transaction", value=request.tx_hash, inline=False)
    if event is not None and event.detail:
        embed.add_field(name="Detail", value=event.detail[:1024], inline=False)
    return embed


class DiscordAlertNotifier:
    """Manager listener that posts operator-relevant events to a webhook."""

    def __init__(
        self,
        webhook_url: str,
        *,
        events: frozenset[str] = frozenset({"ambiguous", "retryable_failure", "rejected"}),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("Webhook URL must be provided")
        self._webhook_url = webhook_url
        self._events = events
        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = logger or _LOGGER

    async def __call__(self, event: SettlementEvent) -> None:
        if event.name not in self._events:
            return
        webhook = discord.Webhook.from_url(self._webhook_url, session=self._get_session())
        try:
            await webhook.send(
                embed=build_request_embed(event.request, event),
                username="Settlement",
            )
        except discord.HTTPException:
            self._logger.exception(
                "Unable to post %s alert for %s %s", event.name, event.request.kind.value, event.request.id
            )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session


__all__ = ["DiscordAlertNotifier", "build_request_embed"]
