"""Schema loading utility."""

import json
from functools import lru_cache
from pathlib import Path

EVENT_SCHEMAS_PATH = Path(__file__).resolve().parent / "event_schemas.json"


def load_schema(path: Path) -> dict:
    """Load a JSON Schema file and return as dict."""
    with open(path) as f:
        return json.load(f)


@lru_cache(maxsize=1)
def event_schemas() -> dict[str, dict]:
    """Per-event inbound schemas, keyed by event name."""
    return load_schema(EVENT_SCHEMAS_PATH)
