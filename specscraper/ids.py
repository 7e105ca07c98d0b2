"""Identifier helpers: device ids, slugs, target URLs and brand inference."""
from __future__ import annotations

import hashlib
from typing import Optional

KIMOVIL_BASE_URL = "https://www.kimovil.com"
DEVICE_ID_LENGTH = 16

KNOWN_BRANDS = [
    "Samsung",
    "Apple",
    "Xiaomi",
    "Redmi",
    "POCO",
    "OnePlus",
    "Huawei",
    "OPPO",
    "Vivo",
    "Realme",
    "Google",
    "Motorola",
    "Nokia",
    "Sony",
    "LG",
    "Asus",
    "ZTE",
    "Honor",
    "Lenovo",
    "Nothing",
    "Infinix",
    "Tecno",
    "TCL",
    "Meizu",
    "HTC",
    "Alcatel",
    "BlackBerry",
    "Doogee",
    "Ulefone",
    "Oukitel",
    "Cubot",
    "Umidigi",
    "Wiko",
    "BLU",
    "Micromax",
]


def derive_device_id(slug: str) -> str:
    """Stable internal id for an external slug (sha256, truncated)."""
    return hashlib.sha256(slug.encode("utf-8")).hexdigest()[:DEVICE_ID_LENGTH]


def infer_brand(name: str) -> Optional[str]:
    lower_name = name.strip().lower()
    for brand in KNOWN_BRANDS:
        if lower_name.startswith(brand.lower()):
            return brand
    return None


def candidate_url(slug: str) -> str:
    return f"{KIMOVIL_BASE_URL}/en/{slug}"


def target_url(slug: str) -> str:
    """Device page that carries both the spec sheet and the offers list."""
    return f"{KIMOVIL_BASE_URL}/en/where-to-buy-{slug}"


def normalize_target_id(value: str) -> str:
    """Accept a bare slug or a full kimovil URL and return the bare slug."""
    value = value.strip()
    if value.startswith("http"):
        value = value.rstrip("/").rsplit("/", 1)[-1]
    if value.startswith("where-to-buy-"):
        value = value[len("where-to-buy-"):]
    return value
