from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from pricewatch.alerts.cooldown import CooldownTracker
from pricewatch.alerts.formatting import escape_md, format_timeframe, format_usd, md_bold
from pricewatch.alerts.models import (
    MAX_THRESHOLD_PCT,
    MAX_WINDOW_MINUTES,
    MIN_THRESHOLD_PCT,
    MIN_WINDOW_MINUTES,
    AlertDefinition,
    User,
    validate_threshold,
    validate_window,
)
from pricewatch.bot.session import CommandRateLimiter, SessionStore
from pricewatch.prices.coingecko import POPULAR_COINS, CoinGeckoClient, PriceFetchError
from storage.alerts_repo import RedisAlertRepository
from storage.users_repo import RedisUserRepository

log = structlog.get_logger("commands")

WELCOME_TEXT = (
    "🤖 *Welcome to Crypto Alert Bot!*\n\n"
    "I watch cryptocurrency prices and message you when one drops by your "
    "threshold within your timeframe.\n\n"
    "/create - Create a new price alert\n"
    "/alerts - View your alerts\n"
    "/prices - Check current prices\n"
    "/popular - Popular cryptocurrencies\n"
    "/help - All commands"
)

HELP_TEXT = (
    "📚 *Crypto Alert Bot Help*\n\n"
    "*Commands:*\n"
    "/alerts - View your alerts\n"
    "/create - Create a new price drop alert\n"
    "/toggle <id> - Pause or resume an alert\n"
    "/delete <id> - Delete an alert\n"
    "/prices [crypto] - Check current prices\n"
    "/popular - Popular cryptocurrencies\n"
    "/cancel - Cancel current operation\n\n"
    "*Creating alerts:*\n"
    "1. /create\n"
    "2. Enter a cryptocurrency (e.g. \"bitcoin\" or \"BTC\")\n"
    f"3. Drop threshold ({MIN_THRESHOLD_PCT:g}-{MAX_THRESHOLD_PCT:g}%)\n"
    f"4. Timeframe ({MIN_WINDOW_MINUTES}-{MAX_WINDOW_MINUTES} minutes)"
)


@dataclass(slots=True, frozen=True)
class IncomingMessage:
    chat_id: int
    user_key: int              # telegram user id of the sender
    text: str
    username: Optional[str] = None


def _parse_id(args: list[str]) -> Optional[int]:
    if not args:
        return None
    try:
        return int(args[0].lstrip("#"))
    except ValueError:
        return None


class CommandRouter:
    """
    Text-in, text-out handler for the chat commands and the /create wizard.
    Returns the reply (Markdown) or None when nothing should be sent.
    """
    def __init__(
        self,
        *,
        users: RedisUserRepository,
        alerts: RedisAlertRepository,
        coins: CoinGeckoClient,
        sessions: Optional[SessionStore] = None,
        limiter: Optional[CommandRateLimiter] = None,
        cooldown: Optional[CooldownTracker] = None,
    ):
        self.users = users
        self.alerts = alerts
        self.coins = coins
        self.sessions = sessions or SessionStore()
        self.limiter = limiter or CommandRateLimiter()
        self.cooldown = cooldown

    async def handle(self, msg: IncomingMessage) -> Optional[str]:
        text = (msg.text or "").strip()
        if not text:
            return None

        user = await self.users.get_or_create(msg.user_key, msg.username)
        if not self.limiter.allow(msg.user_key):
            return "⚠️ You are sending commands too quickly. Please wait a moment."

        try:
            if text.startswith("/"):
                return await self._command(user, msg, text)
            return await self._text(user, msg, text)
        except PriceFetchError as e:
            log.warning("command_price_source_unavailable", user_id=user.id, err=str(e))
            return "❌ Price data is unavailable right now. Please try again later."

    async def _command(self, user: User, msg: IncomingMessage, text: str) -> Optional[str]:
        head, *args = text.split()
        cmd = head[1:].split("@", 1)[0].lower()  # /alerts@MyBot -> alerts

        if cmd == "start":
            return WELCOME_TEXT
        if cmd == "help":
            return HELP_TEXT
        if cmd == "cancel":
            self.sessions.clear(msg.user_key)
            return "❌ Operation cancelled."
        if cmd == "create":
            self.sessions.begin(msg.user_key)
            return (
                "🆕 *Create New Alert*\n\n"
                "*Step 1/3: Choose Cryptocurrency*\n\n"
                "Enter the name or symbol, e.g. \"bitcoin\", \"BTC\", \"ETH\".\n"
                "Use /popular to see options or /cancel to abort."
            )
        if cmd == "alerts":
            return await self._list_alerts(user)
        if cmd == "delete":
            return await self._delete(user, _parse_id(args))
        if cmd == "toggle":
            return await self._toggle(user, _parse_id(args))
        if cmd == "prices":
            return await self._prices(" ".join(args))
        if cmd == "popular":
            return await self._show_prices(POPULAR_COINS, title="🔥 *Popular Cryptocurrencies:*")
        return "🤔 I didn't understand that command.\n\nUse /help to see available commands."

    # ---- /create wizard ----

    async def _text(self, user: User, msg: IncomingMessage, text: str) -> Optional[str]:
        session = self.sessions.get(msg.user_key)
        if session is None:
            return "🤔 I didn't understand that.\n\nUse /help to see available commands."

        if session.step == "crypto":
            coin = await self.coins.find_coin_by_symbol(text)
            if coin is None:
                return f"❌ Cryptocurrency \"{escape_md(text)}\" not found.\n\nTry another name or symbol, or /popular."
            session.asset_id = coin.id
            session.asset_label = coin.label
            session.step = "threshold"
            return (
                f"✅ Selected: {md_bold(coin.label)}\n\n"
                "*Step 2/3: Set Drop Threshold*\n\n"
                f"Enter the percentage drop that should trigger an alert "
                f"({MIN_THRESHOLD_PCT:g}-{MAX_THRESHOLD_PCT:g}), e.g. \"5\" or \"10.5\"."
            )

        if session.step == "threshold":
            try:
                session.threshold_pct = validate_threshold(float(text.rstrip("%")))
            except ValueError:
                return (
                    f"❌ Invalid threshold. Please enter a number between "
                    f"{MIN_THRESHOLD_PCT:g} and {MAX_THRESHOLD_PCT:g}."
                )
            session.step = "timeframe"
            return (
                f"✅ Threshold set to {session.threshold_pct:g}%\n\n"
                "*Step 3/3: Set Timeframe*\n\n"
                f"Enter the timeframe in minutes ({MIN_WINDOW_MINUTES}-{MAX_WINDOW_MINUTES}):\n"
                "15 = 15 minutes, 60 = 1 hour, 240 = 4 hours, 1440 = 24 hours"
            )

        # timeframe
        try:
            window = validate_window(int(text))
        except ValueError:
            return (
                f"❌ Invalid timeframe. Please enter a whole number between "
                f"{MIN_WINDOW_MINUTES} and {MAX_WINDOW_MINUTES} minutes."
            )
        if session.asset_id is None or session.threshold_pct is None:
            # step and fields out of sync; nothing sensible to resume from
            log.warning("wizard_state_incomplete", user_id=user.id, step=session.step)
            self.sessions.clear(msg.user_key)
            return "❌ Something went wrong. Please start over with /create."
        alert = await self.alerts.create(user.id, session.asset_id, session.threshold_pct, window)
        label = session.asset_label or session.asset_id
        self.sessions.clear(msg.user_key)
        return (
            "✅ *Alert Created Successfully!*\n\n"
            f"📱 {md_bold(label)}\n"
            f"📉 Drop Threshold: {alert.threshold_pct:g}%\n"
            f"⏱ Timeframe: {format_timeframe(alert.window_minutes)}\n"
            f"🆔 Alert ID: {alert.id}\n\n"
            f"🔔 You'll be notified when {escape_md(label)} drops {alert.threshold_pct:g}% or more "
            f"within {format_timeframe(alert.window_minutes)}."
        )

    # ---- alert management ----

    async def _owned(self, user: User, alert_id: Optional[int]) -> Optional[AlertDefinition]:
        if alert_id is None:
            return None
        alert = await self.alerts.get(alert_id)
        if alert is None or alert.user_id != user.id:
            return None
        return alert

    async def _list_alerts(self, user: User) -> str:
        alerts = await self.alerts.list_for_user(user.id)
        if not alerts:
            return "📝 You have no alerts configured.\n\nUse /create to set up your first alert!"
        lines = ["📊 *Your Price Alerts:*", ""]
        for a in alerts:
            status = "🟢 Active" if a.is_active else "🔴 Inactive"
            label = await self.coins.asset_label(a.asset_id)
            lines += [
                f"{status} {md_bold(label)}",
                f"📉 Threshold: {a.threshold_pct:g}%",
                f"⏱ Timeframe: {format_timeframe(a.window_minutes)}",
                f"🆔 ID: {a.id}",
                "",
            ]
        lines.append("Use /toggle <id> to pause/resume or /delete <id> to remove.")
        return "\n".join(lines)

    async def _delete(self, user: User, alert_id: Optional[int]) -> str:
        alert = await self._owned(user, alert_id)
        if alert is None:
            return "❌ Alert not found. Usage: /delete <id> (see /alerts)."
        await self.alerts.delete(alert.id)
        if self.cooldown is not None:
            self.cooldown.forget(alert.id)
        return f"✅ Alert {alert.id} deleted successfully."

    async def _toggle(self, user: User, alert_id: Optional[int]) -> str:
        alert = await self._owned(user, alert_id)
        if alert is None:
            return "❌ Alert not found. Usage: /toggle <id> (see /alerts)."
        updated = await self.alerts.update(alert.id, is_active=not alert.is_active)
        if updated is None:
            return "❌ Alert not found."
        return f"✅ Alert {updated.id} {'activated' if updated.is_active else 'deactivated'} successfully."

    # ---- prices ----

    async def _prices(self, query: str) -> str:
        if not query:
            return await self._show_prices(POPULAR_COINS[:5], title="💰 *Current Prices:*")
        coin = await self.coins.find_coin_by_symbol(query)
        if coin is None:
            return f"❌ Cryptocurrency \"{escape_md(query)}\" not found. Use /popular to see available options."
        return await self._show_prices([coin.id], title="💰 *Current Prices:*")

    async def _show_prices(self, asset_ids: list[str], title: str) -> str:
        prices = await self.coins.get_current_prices(asset_ids)
        if not prices:
            return "❌ No prices available at the moment. Please try again later."
        lines = [title, ""]
        for asset_id in asset_ids:
            price = prices.get(asset_id)
            if price is None:
                continue
            label = await self.coins.asset_label(asset_id)
            lines += [f"📈 {md_bold(label)}", f"💵 {format_usd(price)}", ""]
        return "\n".join(lines).rstrip()
