from __future__ import annotations

from pricewatch.utils.time import local_dt

_MD_SPECIALS = "_*`["


def escape_md(text: str) -> str:
    """Backslash-escape Telegram (legacy) Markdown control chars in free text."""
    return "".join(f"\\{ch}" if ch in _MD_SPECIALS else ch for ch in str(text))


def md_bold(text: str) -> str:
    # legacy Markdown has no escapes inside an entity; only '*' can close it early
    return f"*{str(text).replace('*', '')}*"


def _fmt_ts(ts_s: float, tz_name: str) -> str:
    return local_dt(ts_s, tz_name).strftime("%Y-%m-%d %H:%M:%S %Z")  # e.g., 2025-03-01 14:05:00 UTC


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def format_timeframe(minutes: int) -> str:
    if minutes < 60:
        return _plural(minutes, "minute")
    if minutes < 1440:
        return _plural(minutes // 60, "hour")
    return _plural(minutes // 1440, "day")


def format_usd(value: float) -> str:
    # sub-dollar coins need more than two decimals to be readable
    decimals = 2 if abs(value) >= 1.0 else 6
    return f"${value:,.{decimals}f}"


def format_pct(value: float) -> str:
    return f"{value:.2f}"


def format_alert_message(
    label: str,
    pct_change: float,
    ref_price: float,
    new_price: float,
    window_minutes: int,
    triggered_at: float,
    tz_name: str = "UTC",
) -> str:
    """Markdown body of a price-drop notification."""
    return (
        f"🚨 *Price Alert*\n\n"
        f"📉 {md_bold(label)} has dropped *{format_pct(abs(pct_change))}%* "
        f"in the last {format_timeframe(window_minutes)}\n\n"
        f"💰 Previous Price: {format_usd(ref_price)}\n"
        f"💸 Current Price: {format_usd(new_price)}\n"
        f"📊 Change: {format_pct(pct_change)}%\n\n"
        f"⏰ Alert triggered at {_fmt_ts(triggered_at, tz_name)}"
    )
