"""Field extraction from a validated device page."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from ..ids import infer_brand
from . import parsers

LOGGER = logging.getLogger(__name__)

SIM_TYPES = ("Nano-SIM", "Mini-SIM", "Micro-SIM", "eSIM")
TITLE_PREFIX = "Price and specifications on"


def _text(node: Optional[Tag], separator: str = " ") -> Optional[str]:
    if node is None:
        return None
    value = node.get_text(separator, strip=True)
    return value or None


def _section(soup: BeautifulSoup, name: str) -> Optional[Tag]:
    return soup.select_one(f"section.container-sheet-{name}")


def _row_value(scope: Optional[Tag], label: str, separator: str = " ") -> Optional[str]:
    """Text of the ``td`` in the first ``.k-dltable`` row mentioning ``label``."""
    if scope is None:
        return None
    for row in scope.select(".k-dltable tr"):
        header = row.find("th")
        if header is not None and label.lower() in header.get_text(" ", strip=True).lower():
            return _text(row.find("td"), separator)
    return None


def _table_after_heading(scope: Optional[Tag], heading: str) -> Optional[Tag]:
    if scope is None:
        return None
    for h3 in scope.find_all("h3"):
        if heading.lower() in h3.get_text(" ", strip=True).lower():
            sibling = h3.find_next_sibling()
            if sibling is not None and "k-dltable" in (sibling.get("class") or []):
                return sibling
    return None


def _blocks_after_heading(scope: Optional[Tag], heading: str) -> List[Tag]:
    if scope is None:
        return []
    for h3 in scope.find_all("h3"):
        if heading.lower() in h3.get_text(" ", strip=True).lower():
            sibling = h3.find_next_sibling()
            if sibling is not None and "k-column-blocks" in (sibling.get("class") or []):
                return sibling.select("table, dl")
    return []


def _https(url: str) -> str:
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def _extract_name(soup: BeautifulSoup) -> Dict[str, Optional[str]]:
    title = _text(soup.select_one("header .title-group #sec-start")) or _text(soup.find("h1")) or ""
    title = title.replace(TITLE_PREFIX, "").strip()
    brand = infer_brand(title)
    if brand:
        name = title[len(brand):].strip()
    else:
        parts = title.split(" ", 1)
        brand = parts[0] if parts and parts[0] else None
        name = parts[1] if len(parts) > 1 else title
    return {"name": name, "brand": brand}


def _extract_images(soup: BeautifulSoup) -> Optional[List[str]]:
    images: List[str] = []
    for img in soup.select("header .gallery-thumbs img, header .device-main-image img, .product-gallery img"):
        src = img.get("src") or img.get("data-src")
        if src and _https(src) not in images:
            images.append(_https(src))
    return images or None


def _extract_skus(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    node = soup.select_one("header .grouped-versions-list")
    raw = node.get("data-versions") if node is not None else None
    if not raw:
        return []
    try:
        markets = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Unparseable SKU data-versions attribute")
        return []

    grouped: Dict[str, Dict[str, Any]] = {}
    for market in (markets.values() if isinstance(markets, dict) else markets):
        market_id = market.get("mkid")
        devices = market.get("devices") or {}
        for sku in (devices.values() if isinstance(devices, dict) else devices):
            ram_gb = sku.get("ram", 0) / 1024
            storage_gb = sku.get("rom", 0) / 1024
            key = f"{ram_gb}/{storage_gb}"
            entry = grouped.setdefault(key, {"ram_gb": ram_gb, "storage_gb": storage_gb, "marketIds": []})
            if market_id and market_id not in entry["marketIds"]:
                entry["marketIds"].append(market_id)
    return list(grouped.values())


def _camera_from_block(block: Tag) -> Optional[Dict[str, Any]]:
    values: Dict[str, str] = {}
    if block.name == "table":
        for row in block.find_all("tr"):
            key, value = _text(row.find("th")), _text(row.find("td"))
            if key and value:
                values[key] = value
    else:
        current = ""
        for item in block.find_all(["dt", "dd"]):
            if item.name == "dt":
                current = _text(item) or ""
            elif current:
                values[current] = _text(item) or ""

    resolution = parsers.parse_number(values.get("Resolution"))
    if resolution is None:
        return None
    aperture = (values.get("Aperture") or "").replace("ƒ/", "").strip() or None
    sensor = values.get("Sensor")
    return {
        "resolution_mp": resolution,
        "aperture_fstop": None if aperture == "Unknown" else aperture,
        "sensor": None if sensor == "--" else sensor,
        "type": _text(block.select_one(".k-head")) or "Selfie",
        "features": [],
    }


def _extract_cameras(section: Optional[Tag]) -> Dict[str, Any]:
    cameras = []
    for heading in ("rear camera", "Selfie"):
        for block in _blocks_after_heading(section, heading):
            camera = _camera_from_block(block)
            if camera is not None:
                cameras.append(camera)

    features: List[str] = []
    if section is not None:
        for li in section.select('table.k-dltable th:-soup-contains("Features") + td li, dl.k-dl dt:-soup-contains("Extra") + dd li'):
            text = _text(li)
            if text:
                features.append(text)
    return {"cameras": cameras, "cameraFeatures": features}


def _extract_sim(text: Optional[str]) -> List[str]:
    if not text:
        return []
    start, end = text.find("("), text.find(")")
    window = text[start:end + 1] if start != -1 and end != -1 else text
    found = []
    for sim_type in SIM_TYPES:
        index = window.find(sim_type)
        if index != -1:
            found.append(sim_type)
            window = window[:index] + window[index + len(sim_type):]
    return found


def extract_device(html: str, slug: str) -> Dict[str, Any]:
    """Structured spec payload (canonical encoding: list fields are lists)."""
    soup = BeautifulSoup(html, "html.parser")
    intro = _section(soup, "intro")
    design = _section(soup, "design")
    hardware = _section(soup, "hardware")
    connectivity = _section(soup, "connectivity")
    battery = _section(soup, "battery")
    software_section = _section(soup, "software")

    data: Dict[str, Any] = {"slug": slug}
    data.update(_extract_name(soup))

    data["aliases"] = parsers.split_list(_row_value(intro, "Aliases"))
    release_text = _row_value(intro, "Release date")
    release = parsers.parse_release_date(release_text.split(",")[0] if release_text else None)
    data["releaseDate"] = release.isoformat() if release else None
    data["images"] = _extract_images(soup)

    height, width, thickness = parsers.parse_dimensions(_row_value(design, "Size"))
    data.update({"height_mm": height, "width_mm": width, "thickness_mm": thickness})
    data["weight_g"] = parsers.parse_weight(_row_value(design, "Weight"))
    data["materials"] = parsers.split_list(_row_value(design, "Materials"))
    data["ipRating"] = _row_value(design, "Resistance certificates")
    colors = design.select(".k-dltable tr .color-sep") if design is not None else []
    data["colors"] = [c for c in (_text(node) for node in colors) if c] or parsers.split_list(_row_value(design, "Colors"))

    data["size_in"] = parsers.parse_display_size(_row_value(design, "Diagonal"))
    data["displayType"] = _row_value(design, "Type")
    data["resolution"] = parsers.parse_resolution(_row_value(design, "Resolution"))
    data["aspectRatio"] = _row_value(design, "Aspect Ratio")
    data["ppi"] = parsers.parse_ppi(_row_value(design, "Density"))
    features = design.select('.k-dltable tr:-soup-contains("Others") td li') if design is not None else []
    data["displayFeatures"] = [f for f in (_text(li) for li in features) if f]

    processor = _table_after_heading(hardware, "Processor")
    cpu_text = _row_value(processor, "Model")
    if cpu_text:
        manufacturer, _, model = cpu_text.partition(" ")
        data["cpuManufacturer"], data["cpu"] = manufacturer, model or None
    else:
        data["cpuManufacturer"], data["cpu"] = None, None
    data["cpuCores"] = parsers.parse_cpu_cores(_row_value(processor, "CPU"))
    data["gpu"] = _row_value(hardware, "GPU")
    data["sdSlot"] = parsers.parse_yes_no(_row_value(hardware, "SD Slot"))
    data["skus"] = _extract_skus(soup)

    fingerprint = (_row_value(_table_after_heading(hardware, "Security"), "Fingerprint") or "").lower()
    data["fingerprintPosition"] = next(
        (position for position in ("screen", "side", "back") if position in fingerprint), None
    )

    data.update(_extract_cameras(_section(soup, "camera")))

    nfc_dd = None
    if connectivity is not None:
        nfc_dd = connectivity.select_one('dl.k-dl dt:-soup-contains("NFC") + dd')
    data["nfc"] = parsers.parse_yes_no(_text(nfc_dd)) if nfc_dd is not None else parsers.parse_yes_no(_row_value(connectivity, "NFC"))
    bluetooth = _row_value(_table_after_heading(connectivity, "Bluetooth"), "Version")
    data["bluetooth"] = bluetooth
    data["sim"] = _extract_sim(_row_value(_table_after_heading(connectivity, "SIM card"), "Type"))
    data["simCount"] = len(data["sim"])
    jack = _row_value(connectivity, "Audio Jack")
    data["headphoneJack"] = jack == "Yes" if jack is not None else None

    data["batteryCapacity_mah"] = parsers.parse_battery_capacity(_row_value(battery, "Capacity"))
    fast_charge = _row_value(battery, "Fast charge")
    data["batteryFastCharging"] = parsers.parse_yes_no(fast_charge)
    data["batteryWattage"] = parsers.parse_wattage(fast_charge)

    software = parsers.parse_software(_row_value(software_section, "Operating System", separator="\n"))
    data["os"], data["osSkin"] = software if software else (None, None)
    data["others"] = None
    return data


def extract_offers(html: str) -> List[Dict[str, Any]]:
    """Offers listed on the where-to-buy page."""
    soup = BeautifulSoup(html, "html.parser")
    offers = []
    for node in soup.select("[data-offer-id]"):
        price, currency = parsers.parse_price(_text(node.select_one(".price")) or node.get("data-price"))
        if price is None:
            continue
        link = node.select_one("a[href]")
        offers.append(
            {
                "id": node["data-offer-id"],
                "price": price,
                "currency": currency,
                "seller": _text(node.select_one(".shop-name")) or node.get("data-store"),
                "url": _https(link["href"]) if link is not None else None,
                "redirectTarget": node.get("data-redirect-target"),
            }
        )
    return offers
