"""
attribute_reader.py - Collector settings from the page's data-* annotations.

Usage:
    dataset = dataset_from_html(html)
    provider = get_data_attribute(dataset, "provider")
    prefixes = split_attribute_value(dataset, "customMarksPrefixes")
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

import config

ELEMENT_TIMING_MARKER = "data-bilmur-mie"
ELEMENT_TIMING_SELECTOR = f"[{ELEMENT_TIMING_MARKER}]"
ELEMENT_TIMING_OPT_IN = "elementtiming"


def _dataset_key(attr: str) -> str:
    # data-custom-marks-prefixes -> customMarksPrefixes
    name = attr[len("data-"):]
    return re.sub(r"-([a-z])", lambda m: m.group(1).upper(), name)


def find_collector_script(soup: BeautifulSoup, marker: str = config.SCRIPT_MARKER) -> Optional[Tag]:
    """The <script> that loaded the collector: src containing the marker, else the first one with data-provider."""
    for script in soup.find_all("script"):
        src = script.get("src")
        if isinstance(src, str) and marker and marker in src:
            return script
    return soup.find("script", attrs={"data-provider": True})


def dataset_from_html(html: Union[str, BeautifulSoup, None], marker: str = config.SCRIPT_MARKER) -> dict[str, str]:
    soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html or "", "html.parser")
    script = find_collector_script(soup, marker)
    if script is None:
        return {}
    dataset: dict[str, str] = {}
    for attr, value in script.attrs.items():
        if not attr.startswith("data-"):
            continue
        if isinstance(value, list):
            value = " ".join(value)
        dataset[_dataset_key(attr)] = value
    return dataset


def get_data_attribute(dataset: Optional[dict], name: str, default: Any = None) -> Any:
    value = (dataset or {}).get(name)
    return value or default


def split_attribute_value(dataset: Optional[dict], name: str) -> list[str]:
    value = get_data_attribute(dataset, name, "")
    if not value:
        return []
    if not isinstance(value, str):
        return list(value)
    # blank pieces are dropped: a trailing comma must not add an empty prefix that accepts every name
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_custom_properties(text: Optional[str]) -> Optional[str]:
    """
    Keep only the string-valued keys of a JSON object and re-serialize them.
    Anything unparseable, non-object or left empty yields None.
    """
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    kept = {key: value for key, value in parsed.items() if isinstance(value, str)}
    if not kept:
        return None
    return json.dumps(kept, separators=(",", ":"), ensure_ascii=False)


def allows_iframe(dataset: Optional[dict]) -> bool:
    # HTML lowercases attribute names, so data-allowIframe arrives as "allowiframe"
    value = get_data_attribute(dataset, "allowIframe") or get_data_attribute(dataset, "allowiframe")
    return value == "true"
