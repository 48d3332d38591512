from unittest.mock import patch

from app.billing.plans import (
    UNLIMITED,
    calculate_usage_percentage,
    format_usage_display,
    get_plan,
    get_plan_by_price_id,
    get_remaining_usage,
    get_upgrade_message,
    has_premium_access,
    is_approaching_limit,
    is_over_limit,
    should_show_upgrade_prompt,
)


def test_unknown_plan_falls_back_to_free():
    assert get_plan("platinum").id == "free"
    assert get_plan(None).limits.basic_interactions == 50


def test_plan_lookup_by_stripe_price():
    with patch("app.billing.plans.settings.STRIPE_PRO_PRICE_ID", "price_pro"):
        assert get_plan_by_price_id("price_pro").id == "pro"
    assert get_plan_by_price_id("price_unknown").id == "free"
    assert get_plan_by_price_id(None).id == "free"


def test_premium_access_by_plan():
    assert has_premium_access("free") is False
    assert has_premium_access("basic") is True


def test_limit_helpers_handle_unlimited_and_zero():
    assert is_over_limit(10**6, UNLIMITED) is False
    assert is_over_limit(50, 50) is True
    assert is_approaching_limit(0, 0) is True
    assert is_approaching_limit(39, 50) is False
    assert is_approaching_limit(40, 50) is True

    assert calculate_usage_percentage(5, UNLIMITED) == 0.0
    assert calculate_usage_percentage(0, 0) == 100.0
    assert calculate_usage_percentage(75, 50) == 100.0
    assert calculate_usage_percentage(10, 50) == 20.0

    assert get_remaining_usage(60, 50) == 0
    assert get_remaining_usage(1, UNLIMITED) == UNLIMITED


def test_usage_display_and_upgrade_copy():
    assert format_usage_display(1200, UNLIMITED) == "1,200 / Unlimited"
    assert format_usage_display(3, 1000) == "3 / 1,000"
    assert get_upgrade_message("voice_chats", "free").startswith("Upgrade to have more voice")
    assert get_upgrade_message("voice_chats", "pro") == "Upgrade to get unlimited voice chats"
    assert get_upgrade_message("videos", "free") == "Upgrade for more features and higher limits"


def test_upgrade_prompt():
    assert should_show_upgrade_prompt({"basic_interactions": 45}, "free") is True
    assert should_show_upgrade_prompt({"basic_interactions": 5}, "basic") is False
    assert should_show_upgrade_prompt({"basic_interactions": 10**6}, "enterprise") is False
