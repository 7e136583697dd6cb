from pricewatch.alerts.formatting import (
    escape_md,
    format_alert_message,
    format_timeframe,
    format_usd,
    md_bold,
)

def test_format_timeframe_units():
    assert format_timeframe(5) == "5 minutes"
    assert format_timeframe(1) == "1 minute"
    assert format_timeframe(60) == "1 hour"
    assert format_timeframe(240) == "4 hours"
    assert format_timeframe(1440) == "1 day"

def test_format_usd_precision_by_magnitude():
    assert format_usd(42123.456) == "$42,123.46"
    assert format_usd(0.0001234) == "$0.000123"

def test_alert_message_contents():
    text = format_alert_message(
        "Bitcoin (BTC)", pct_change=-6.0, ref_price=100.0, new_price=94.0,
        window_minutes=60, triggered_at=0.0, tz_name="UTC",
    )
    assert text.startswith("🚨 *Price Alert*")
    assert "*Bitcoin (BTC)* has dropped *6.00%* in the last 1 hour" in text
    assert "Previous Price: $100.00" in text
    assert "Current Price: $94.00" in text
    assert "Change: -6.00%" in text
    assert "1970-01-01 00:00:00 UTC" in text

def test_alert_message_uses_display_timezone():
    text = format_alert_message("eth", -10.0, 10.0, 9.0, 15, 0.0, tz_name="Asia/Tokyo")
    assert "1970-01-01 09:00:00 JST" in text

def test_escape_md_and_md_bold():
    assert escape_md("my_coin *x* [y] `z`") == "my\\_coin \\*x\\* \\[y] \\`z\\`"
    assert escape_md("Bitcoin (BTC)") == "Bitcoin (BTC)"
    assert md_bold("Star*Token (ST*R)") == "*StarToken (STR)*"

def test_alert_message_label_cannot_close_bold_early():
    text = format_alert_message("Wrapped_ETH*", -6.0, 100.0, 94.0, 60, 0.0)
    assert "📉 *Wrapped_ETH* has dropped *6.00%*" in text
