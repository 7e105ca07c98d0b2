"""Pure text parsers for values found on device spec sheets."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

_CORE_PATTERN = re.compile(r"(\d+)\s*[x×]\s*([\d.,]+)\s*(ghz|mhz)", re.IGNORECASE)
_RELEASE_PATTERN = re.compile(r"([a-z]+)\s+(\d{4})", re.IGNORECASE)
_OS_PATTERN = re.compile(r"\w+ ?[\d.,]*")
_NUMBER_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)")

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}


def parse_cpu_cores(text: Optional[str]) -> Optional[List[str]]:
    """``"1x3.21GHz Cortex-X4 • 3x2.6GHz"`` -> ``["1x3210", "3x2600"]`` (MHz)."""
    if not text:
        return None
    normalized = re.sub(r"\s+", " ", text.replace("•", " ")).strip()
    cores = []
    for count, frequency, unit in _CORE_PATTERN.findall(normalized):
        value = float(frequency.replace(",", "."))
        mhz = round(value * 1000) if unit.lower() == "ghz" else round(value)
        cores.append(f"{int(count)}x{mhz}")
    return cores or None


def parse_release_date(text: Optional[str]) -> Optional[datetime]:
    """``"March 2024"`` -> 2024-03-01 00:00 UTC."""
    if not text:
        return None
    match = _RELEASE_PATTERN.search(text.strip().lower())
    if not match:
        return None
    month = MONTHS.get(match.group(1))
    if month is None:
        return None
    return datetime(int(match.group(2)), month, 1, tzinfo=timezone.utc)


def parse_software(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(os, os_skin)``.

    The sheet lays the cell out as ``"<os>\\n\\n<skin> (<notes>)"``; blank lines are skipped.
    """
    if not text:
        return None
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return None
    match = _OS_PATTERN.search(lines[0].strip())
    if not match:
        return None
    skin = lines[1].split("(")[0].strip() if len(lines) > 1 else ""
    return match.group(0).strip(), skin


def parse_number(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _NUMBER_PATTERN.search(text)
    if not match:
        return None
    return float(match.group(1).replace(",", "."))


def parse_int(text: Optional[str]) -> Optional[int]:
    value = parse_number(text)
    return int(value) if value is not None else None


def parse_dimensions(text: Optional[str]) -> Tuple[Optional[float], Optional[float], Optional[float]]:
    """Return (height, width, thickness) in mm, largest first."""
    if not text:
        return None, None, None
    if "mm" in text:
        text = text[: text.rfind("mm")]
    values = [float(v) for v in re.findall(r"\b(\d+(?:\.\d+)?)\b", text)]
    if len(values) != 3:
        return None, None, None
    height, width, thickness = sorted(values, reverse=True)
    return height, width, thickness


def parse_weight(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = re.search(r"([\d.]+)\s*g", text)
    return float(match.group(1)) if match else None


def parse_battery_capacity(text: Optional[str]) -> Optional[int]:
    """``"5000 mAh"`` -> ``5000``; a bare number is taken as mAh."""
    if not text:
        return None
    match = re.search(r"(\d[\d\s.,]*?)\s*mah", text, re.IGNORECASE)
    if match:
        return int(re.sub(r"[\s.,]", "", match.group(1)))
    return parse_int(text)


def parse_display_size(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = re.search(r'([\d.]+)\s*"', text)
    return float(match.group(1)) if match else None


def parse_resolution(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = re.search(r"(\d+)\s*x\s*(\d+)", text, re.IGNORECASE)
    return f"{match.group(1)}x{match.group(2)}" if match else None


def parse_ppi(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"(\d+)\s*ppi", text, re.IGNORECASE)
    return int(match.group(1)) if match else None


def parse_wattage(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = re.search(r"(\d+(?:\.\d+)?)\s*w\b", text.lower())
    return float(match.group(1)) if match else None


def parse_yes_no(text: Optional[str]) -> Optional[bool]:
    if text is None:
        return None
    return "yes" in text.lower()


def parse_price(text: Optional[str]) -> Tuple[Optional[float], Optional[str]]:
    """``"1 299,99 €"`` -> ``(1299.99, "€")``."""
    if not text:
        return None, None
    currency_match = re.search(r"[€$£₽]|[A-Z]{3}", text)
    digits = re.sub(r"[^\d.,]", "", text)
    if not digits:
        return None, None
    if "," in digits and "." in digits:
        digits = digits.replace(",", "") if digits.rfind(".") > digits.rfind(",") else digits.replace(".", "").replace(",", ".")
    elif "," in digits:
        head, _, tail = digits.rpartition(",")
        digits = f"{head.replace(',', '')}.{tail}" if len(tail) <= 2 else digits.replace(",", "")
    try:
        value = float(digits)
    except ValueError:
        return None, None
    return value, currency_match.group(0) if currency_match else None


def split_list(text: Optional[str], separator: str = ",") -> List[str]:
    if not text:
        return []
    return [part.strip() for part in re.sub(r"\s+", " ", text).split(separator) if part.strip()]
