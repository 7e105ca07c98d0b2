"""Forward-only normalization passes over cached raw/derived payloads.

Historical rows predate the current payload contract: list fields were once
stored pipe-delimited (``"a|b"``) and later, by accident, JSON-encoded twice
(``'["a","b"]'``). Each pass rewrites one family of legacy encodings to the
canonical one and is a no-op on rows that already conform.
"""
from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Protocol, Tuple

from psycopg2.extras import Json

LOGGER = logging.getLogger(__name__)

ARRAY_FIELDS = (
    "aliases",
    "images",
    "materials",
    "colors",
    "displayFeatures",
    "cpuCores",
    "sim",
    "cameraFeatures",
    "others",
)

PassFunction = Callable[[Dict[str, Any]], Tuple[Dict[str, Any], bool]]


def _loads(value: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(value)
    except (TypeError, ValueError):
        return False, None


def is_json_array_string(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    ok, parsed = _loads(value)
    return ok and isinstance(parsed, list)


def is_pipe_delimited(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    ok, _ = _loads(value)
    return not ok and "|" in value


def split_pipes(value: str) -> List[str]:
    return [part for part in value.split("|") if part]


def pipe_to_list(data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """001: pipe-delimited strings in list fields become lists."""
    result = dict(data)
    changed = False
    for field in ARRAY_FIELDS:
        value = result.get(field)
        if is_pipe_delimited(value):
            result[field] = split_pipes(value)
            changed = True
    return result, changed


def _fix_sku(sku: Any) -> Tuple[Any, bool]:
    if not isinstance(sku, dict):
        return sku, False
    if isinstance(sku.get("marketId"), str):
        fixed = {key: value for key, value in sku.items() if key != "marketId"}
        fixed["marketIds"] = split_pipes(sku["marketId"])
        return fixed, True
    market_ids = sku.get("marketIds")
    if isinstance(market_ids, str):
        ok, parsed = _loads(market_ids)
        if ok:
            if isinstance(parsed, list):
                return {**sku, "marketIds": parsed}, True
            return sku, False
        return {**sku, "marketIds": split_pipes(market_ids)}, True
    return sku, False


def _fix_camera(camera: Any) -> Tuple[Any, bool]:
    if not isinstance(camera, dict) or not isinstance(camera.get("features"), str):
        return camera, False
    features = camera["features"]
    ok, parsed = _loads(features)
    if ok and isinstance(parsed, list):
        return {**camera, "features": parsed}, True
    if "|" in features:
        return {**camera, "features": split_pipes(features)}, True
    if features == "":
        return {**camera, "features": []}, True
    return camera, False


def fix_double_encoded(data: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """002: JSON-in-a-string lists, sku market ids and camera features."""
    result = dict(data)
    changed = False

    for field in ARRAY_FIELDS:
        value = result.get(field)
        if is_json_array_string(value):
            result[field] = json.loads(value)
            changed = True
        elif is_pipe_delimited(value):
            result[field] = split_pipes(value)
            changed = True

    for key, fixer in (("skus", _fix_sku), ("cameras", _fix_camera)):
        entries = result.get(key)
        if isinstance(entries, list):
            fixed_entries = []
            for entry in entries:
                fixed, entry_changed = fixer(entry)
                changed = changed or entry_changed
                fixed_entries.append(fixed)
            result[key] = fixed_entries

    return result, changed


@dataclass(frozen=True)
class NormalizationPass:
    name: str
    description: str
    apply: PassFunction


PASSES: Dict[str, NormalizationPass] = {
    p.name: p
    for p in (
        NormalizationPass("001_pipe_to_list", "Pipe-delimited list fields to lists", pipe_to_list),
        NormalizationPass("002_fix_double_encoded", "Double-encoded list fields, SKU market ids, camera features", fix_double_encoded),
    )
}


def normalize_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Run every pass, in order, over one payload."""
    for normalization_pass in PASSES.values():
        data, _ = normalization_pass.apply(data)
    return data


def derive_specs(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Derived spec record: canonical encoding plus a few computed fields.

    Pure function of the raw payload, so derived rows can always be rebuilt.
    """
    data = normalize_payload(copy.deepcopy(raw))
    skus = [sku for sku in data.get("skus") or [] if isinstance(sku, dict)]
    data["ramOptions_gb"] = sorted({sku["ram_gb"] for sku in skus if sku.get("ram_gb")})
    data["storageOptions_gb"] = sorted({sku["storage_gb"] for sku in skus if sku.get("storage_gb")})
    release = data.get("releaseDate")
    data["releaseYear"] = int(release[:4]) if isinstance(release, str) and release[:4].isdigit() else None
    data["cameraCount"] = len(data.get("cameras") or [])
    return data


class RowTable(Protocol):
    """A table of ``(key, payload)`` rows a pass can rewrite."""

    name: str

    def iter_rows(self) -> Iterable[Tuple[Hashable, Any]]:
        ...

    def update_row(self, key: Hashable, data: Dict[str, Any]) -> None:
        ...

    def snapshot(self, label: str) -> bool:
        """Copy the table aside under ``label``; False if that copy already exists."""
        ...

    def commit(self) -> None:
        ...


@dataclass
class PassReport:
    pass_name: str
    table: str
    scanned: int = 0
    changed: int = 0
    invalid: int = 0
    snapshot_created: bool = False


def _as_payload(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        ok, parsed = _loads(value)
        if ok and isinstance(parsed, dict):
            return parsed
    return None


def run_pass(table: RowTable, normalization_pass: NormalizationPass) -> PassReport:
    """Apply one pass to every row; snapshot before the first write."""
    report = PassReport(pass_name=normalization_pass.name, table=table.name)
    snapshot_taken = False

    for key, value in list(table.iter_rows()):
        report.scanned += 1
        payload = _as_payload(value)
        if payload is None:
            LOGGER.warning("Skipping %s row %s: invalid JSON payload", table.name, key)
            report.invalid += 1
            continue

        migrated, changed = normalization_pass.apply(payload)
        if not changed:
            continue

        if not snapshot_taken:
            report.snapshot_created = table.snapshot(normalization_pass.name)
            snapshot_taken = True
        table.update_row(key, migrated)
        report.changed += 1
        LOGGER.debug("Normalized %s row %s", table.name, key)

    table.commit()
    LOGGER.info(
        "Pass %s on %s: scanned=%d changed=%d invalid=%d",
        normalization_pass.name,
        table.name,
        report.scanned,
        report.changed,
        report.invalid,
    )
    return report


class MemoryRowTable:
    """Dict-backed table; snapshots are deep copies kept on the instance."""

    def __init__(self, name: str, rows: Optional[Dict[Hashable, Any]] = None) -> None:
        self.name = name
        self.rows: Dict[Hashable, Any] = rows if rows is not None else {}
        self.snapshots: Dict[str, Dict[Hashable, Any]] = {}

    def iter_rows(self) -> Iterable[Tuple[Hashable, Any]]:
        return list(self.rows.items())

    def update_row(self, key: Hashable, data: Dict[str, Any]) -> None:
        self.rows[key] = data

    def snapshot(self, label: str) -> bool:
        if label in self.snapshots:
            return False
        self.snapshots[label] = copy.deepcopy(self.rows)
        return True

    def commit(self) -> None:
        pass


class PostgresRowTable:
    """``id``/``data`` rows of a Postgres table, rewritten through psycopg2."""

    def __init__(self, conn, table: str, where: str = "") -> None:
        self.conn = conn
        self.name = table
        self.where = where

    def iter_rows(self) -> Iterable[Tuple[Hashable, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT id, data FROM {self.name} {self.where} ORDER BY id")
            return cur.fetchall()

    def update_row(self, key: Hashable, data: Dict[str, Any]) -> None:
        with self.conn.cursor() as cur:
            cur.execute(f"UPDATE {self.name} SET data = %s WHERE id = %s", (Json(data), key))

    def snapshot(self, label: str) -> bool:
        backup = f"{self.name}_backup_{label}"
        with self.conn.cursor() as cur:
            cur.execute("SELECT to_regclass(%s)", (backup,))
            if cur.fetchone()[0] is not None:
                LOGGER.info("Backup %s already exists", backup)
                return False
            cur.execute(f"CREATE TABLE {backup} AS TABLE {self.name}")
        self.conn.commit()
        LOGGER.info("Created backup table %s", backup)
        return True

    def commit(self) -> None:
        self.conn.commit()


class QuoteTable(Protocol):
    def set_redirect_type(self, source: str, offer_id: str, redirect_type: str) -> int:
        """Fill ``redirect_type`` where it is still NULL; return rows updated."""
        ...

    def commit(self) -> None:
        ...


def backfill_redirect_types(raw_payloads: Iterable[Any], quotes: QuoteTable, source: str = "price_ru") -> int:
    """Copy ``redirectTarget`` from raw price payloads onto matching quotes."""
    updated = 0
    for value in raw_payloads:
        payload = _as_payload(value)
        if payload is None:
            continue
        items = (payload.get("search") or {}).get("items") or []
        for item in items:
            if not isinstance(item, dict):
                continue
            offer_id, redirect = item.get("id"), item.get("redirectTarget")
            if offer_id is None or not redirect:
                continue
            updated += quotes.set_redirect_type(source, str(offer_id), str(redirect))
    quotes.commit()
    LOGGER.info("Backfilled redirect_type on %d %s price quotes", updated, source)
    return updated


class MemoryQuoteTable:
    def __init__(self, quotes: Optional[List[Any]] = None) -> None:
        self.quotes = quotes if quotes is not None else []

    def set_redirect_type(self, source: str, offer_id: str, redirect_type: str) -> int:
        updated = 0
        for index, quote in enumerate(self.quotes):
            if quote.source == source and quote.offer_id == offer_id and quote.redirect_type is None:
                self.quotes[index] = quote.model_copy(update={"redirect_type": redirect_type})
                updated += 1
        return updated

    def commit(self) -> None:
        pass


class PostgresQuoteTable:
    def __init__(self, conn) -> None:
        self.conn = conn

    def set_redirect_type(self, source: str, offer_id: str, redirect_type: str) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE price_quotes SET redirect_type = %s
                WHERE source = %s AND offer_id = %s AND redirect_type IS NULL
                """,
                (redirect_type, source, offer_id),
            )
            return cur.rowcount

    def commit(self) -> None:
        self.conn.commit()


def load_price_payloads(conn, source: str = "price_ru") -> List[Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT data FROM entity_data_raw
            WHERE source = %s AND data_kind = 'prices' AND superseded_at IS NULL
            """,
            (source,),
        )
        return [row[0] for row in cur.fetchall()]


def table_for(conn, table: str) -> PostgresRowTable:
    if table not in ("entity_data_raw", "entity_data"):
        raise ValueError(f"Normalization is not defined for table {table!r}")
    return PostgresRowTable(conn, table)


__all__ = [
    "ARRAY_FIELDS",
    "PASSES",
    "NormalizationPass",
    "PassReport",
    "run_pass",
    "derive_specs",
    "normalize_payload",
    "backfill_redirect_types",
    "MemoryRowTable",
    "PostgresRowTable",
    "MemoryQuoteTable",
    "PostgresQuoteTable",
    "load_price_payloads",
    "table_for",
]
