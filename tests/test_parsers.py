from datetime import datetime, timezone

from specscraper.scrape import parsers


def test_parse_cpu_cores_converts_to_mhz():
    assert parsers.parse_cpu_cores("1x3.21GHz Cortex-X4 • 3x2.6GHz") == ["1x3210", "3x2600"]
    assert parsers.parse_cpu_cores("8x 1800 MHz") == ["8x1800"]
    assert parsers.parse_cpu_cores("Octa-core") is None
    assert parsers.parse_cpu_cores(None) is None


def test_parse_release_date():
    assert parsers.parse_release_date("March 2024") == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert parsers.parse_release_date("Smarch 2024") is None
    assert parsers.parse_release_date("") is None


def test_parse_software_skips_blank_lines_and_notes():
    assert parsers.parse_software("Android 14\n\nOne UI 6.1 (notes)") == ("Android 14", "One UI 6.1")
    assert parsers.parse_software("iOS 17.4") == ("iOS 17.4", "")
    assert parsers.parse_software("\n\n") is None


def test_parse_dimensions_orders_largest_first():
    assert parsers.parse_dimensions("162.3 x 77.1 x 8.9 mm") == (162.3, 77.1, 8.9)
    assert parsers.parse_dimensions("8.9 x 162.3 x 77.1 mm") == (162.3, 77.1, 8.9)
    assert parsers.parse_dimensions("162 x 77 mm") == (None, None, None)


def test_parse_price_handles_separators():
    assert parsers.parse_price("1 299,99 €") == (1299.99, "€")
    assert parsers.parse_price("$1,299.99") == (1299.99, "$")
    assert parsers.parse_price("1.299,99 EUR") == (1299.99, "EUR")
    assert parsers.parse_price("12,999 ₽") == (12999.0, "₽")
    assert parsers.parse_price("n/a") == (None, None)


def test_small_parsers():
    assert parsers.parse_weight("232 g") == 232.0
    assert parsers.parse_display_size('6.8"') == 6.8
    assert parsers.parse_resolution("1440 x 3120 pixels") == "1440x3120"
    assert parsers.parse_ppi("505 ppi") == 505
    assert parsers.parse_wattage("Yes, 45W") == 45.0
    assert parsers.parse_wattage("Yes") is None
    assert parsers.parse_int("5000 mAh") == 5000
    assert parsers.parse_battery_capacity("5000 mAh") == 5000
    assert parsers.parse_battery_capacity("Capacity: 4,500 mAh, Li-Po") == 4500
    assert parsers.parse_battery_capacity("4700") == 4700
    assert parsers.parse_battery_capacity("") is None
    assert parsers.parse_number("ƒ/1,8") == 1.8


def test_parse_yes_no():
    assert parsers.parse_yes_no("Yes") is True
    assert parsers.parse_yes_no("No") is False
    assert parsers.parse_yes_no(None) is None


def test_split_list_strips_parts():
    assert parsers.split_list(" Glass ,  Aluminum,,") == ["Glass", "Aluminum"]
    assert parsers.split_list(None) == []
