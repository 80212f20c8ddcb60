"""Column detection for MLS export spreadsheets."""

import re

import structlog

from mls_geo.pipeline.types import DetectedColumns

logger = structlog.get_logger()

# Ordered by confidence: exact header names first, loose fragments last.
COLUMN_PATTERNS: dict[str, list[re.Pattern]] = {
    "address": [
        re.compile(r"^address$", re.IGNORECASE),
        re.compile(r"^address.*internet.*display$", re.IGNORECASE),
        re.compile(r"address", re.IGNORECASE),
        re.compile(r"addr", re.IGNORECASE),
        re.compile(r"street", re.IGNORECASE),
        re.compile(r"location", re.IGNORECASE),
        re.compile(r"direccion", re.IGNORECASE),
        re.compile(r"internet.*display", re.IGNORECASE),
        re.compile(r"display.*address", re.IGNORECASE),
    ],
    "zip": [
        re.compile(r"^zip.*code$", re.IGNORECASE),
        re.compile(r"^zip$", re.IGNORECASE),
        re.compile(r"zip", re.IGNORECASE),
        re.compile(r"postal", re.IGNORECASE),
        re.compile(r"codigo.*postal", re.IGNORECASE),
    ],
    "city": [
        re.compile(r"^city.*name$", re.IGNORECASE),
        re.compile(r"^city$", re.IGNORECASE),
        re.compile(r"city", re.IGNORECASE),
        re.compile(r"ciudad", re.IGNORECASE),
        re.compile(r"municipality", re.IGNORECASE),
    ],
    "county": [
        re.compile(r"^county$", re.IGNORECASE),
        re.compile(r"county", re.IGNORECASE),
        re.compile(r"condado", re.IGNORECASE),
        re.compile(r"provincia", re.IGNORECASE),
    ],
    "listing_id": [
        re.compile(r"^ml#$", re.IGNORECASE),
        re.compile(r"^mls.*number$", re.IGNORECASE),
        re.compile(r"ml#", re.IGNORECASE),
        re.compile(r"mls.*number", re.IGNORECASE),
        re.compile(r"mls.*#", re.IGNORECASE),
        re.compile(r"listing.*number", re.IGNORECASE),
        re.compile(r"mls.*id", re.IGNORECASE),
        re.compile(r"^mls$", re.IGNORECASE),
    ],
    "neighborhood": [
        re.compile(r"^neighborhoods?$", re.IGNORECASE),
        re.compile(r"^neighbourhoods?$", re.IGNORECASE),
        re.compile(r"neighborhood", re.IGNORECASE),
        re.compile(r"neighbourhood", re.IGNORECASE),
        re.compile(r"vecindario", re.IGNORECASE),
        re.compile(r"barrio", re.IGNORECASE),
        re.compile(r"district", re.IGNORECASE),
    ],
    "community": [
        re.compile(r"^communities$", re.IGNORECASE),
        re.compile(r"^community$", re.IGNORECASE),
        re.compile(r"communit", re.IGNORECASE),
        re.compile(r"comunidad", re.IGNORECASE),
        re.compile(r"subdivision", re.IGNORECASE),
        re.compile(r"development", re.IGNORECASE),
        re.compile(r"urbanizaci", re.IGNORECASE),
        re.compile(r"residencial", re.IGNORECASE),
        re.compile(r"condominio", re.IGNORECASE),
    ],
}


def detect_columns(headers: list[str]) -> DetectedColumns:
    """
    Resolve canonical fields to source column names.

    Each pattern list is tried in order against every header; the first
    pattern that matches any header wins, so "Address" beats
    "Address Internet Display" only when both are present. A header is
    never assigned to two fields.
    """
    detected: dict[str, str | None] = {}
    taken: set[str] = set()

    for field_name, patterns in COLUMN_PATTERNS.items():
        detected[field_name] = None
        for pattern in patterns:
            match = next(
                (h for h in headers if h not in taken and pattern.search(str(h))),
                None,
            )
            if match is not None:
                detected[field_name] = match
                taken.add(match)
                break

    columns = DetectedColumns(**detected)
    logger.info(
        "Columns detected",
        total_headers=len(headers),
        **{k: v for k, v in detected.items() if v},
    )
    if columns.address is None:
        logger.warning("No address column detected", headers=headers[:30])
    return columns
