from __future__ import annotations

from typing import Dict, Optional


H_EVENT_ID = "x-event-id"
H_EVENT_TYPE = "x-event-type"
H_VERSION = "x-version"


def get_header(headers: Dict[str, bytes], key: str) -> Optional[str]:
    value = headers.get(key)
    return value.decode("utf-8") if value is not None else None


def set_header(headers: Dict[str, bytes], key: str, value: str) -> None:
    headers[key] = value.encode("utf-8")
