"""EventDecoder: validate inbound server events against per-event schemas.

Each named event is checked against its JSON Schema. Required fields that
are missing or of the wrong type reject the whole event. Optional fields
that are null or of the wrong type are dropped, and schema defaults fill
any optional field that ends up absent, so handlers never have to guard
against missing optional data.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

import jsonschema

from relaysync.core.schemas import event_schemas

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodeResult:
    """Result of decoding one inbound event."""

    success: bool
    name: str
    payload: dict | None
    error: str | None
    known: bool = True


class EventDecoder:
    """Validate event payloads and fill defaults for optional fields."""

    def __init__(self, schemas: dict[str, dict] | None = None) -> None:
        self._schemas = schemas if schemas is not None else event_schemas()
        self._validators = {
            name: jsonschema.Draft7Validator(schema)
            for name, schema in self._schemas.items()
        }

    def knows(self, name: str) -> bool:
        return name in self._schemas

    def decode(self, name: str, payload: dict | None) -> DecodeResult:
        if name not in self._schemas:
            return DecodeResult(
                success=False, name=name, payload=None,
                error=f"No schema for event {name!r}", known=False,
            )

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return DecodeResult(
                success=False, name=name, payload=None,
                error="Payload is not an object",
            )

        schema = self._schemas[name]
        required = set(schema.get("required", []))
        properties = schema.get("properties", {})
        data = {k: v for k, v in payload.items() if not (v is None and k not in required)}

        validator = self._validators[name]
        while True:
            errors = list(validator.iter_errors(data))
            if not errors:
                break
            dropped = False
            for error in errors:
                path = list(error.absolute_path)
                if path and path[0] in data and path[0] not in required:
                    logger.debug("%s: dropping invalid optional field %r: %s", name, path[0], error.message)
                    del data[path[0]]
                    dropped = True
                    break
            if not dropped:
                first = errors[0]
                where = ".".join(str(p) for p in first.absolute_path) or "<root>"
                return DecodeResult(
                    success=False, name=name, payload=None,
                    error=f"Schema validation at {where}: {first.message}",
                )

        for key, prop in properties.items():
            if key not in data and "default" in prop:
                data[key] = copy.deepcopy(prop["default"])

        return DecodeResult(success=True, name=name, payload=data, error=None)
