from __future__ import annotations

import json
from typing import Any

from ..exceptions import SerializationError


class JsonSerializer:
    def dumps(self, obj: Any) -> bytes:
        try:
            # Decimal and datetime values go out as strings
            return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e

    def loads(self, data: bytes) -> Any:
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError(str(e)) from e
