"""
Task Message — the unit of work carried on the prompt queue.

Wire schema (UTF-8 JSON object, flat, absent fields omitted):
  {
      "promptText":     free-text prompt body,
      "requestedModel": model override,
      "enhance":        append the enhancement instruction,
      "promptId":       name of a stored library prompt,
  }

There is no schema version field. Unknown keys are ignored when decoding.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

# attribute name -> (wire key, expected type)
_WIRE_FIELDS = {
    "prompt_text": ("promptText", str),
    "requested_model": ("requestedModel", str),
    "enhance": ("enhance", bool),
    "prompt_id": ("promptId", str),
}


class MessageDecodeError(ValueError):
    """Raised when a queue body cannot be decoded into a TaskMessage."""


@dataclass(frozen=True)
class TaskMessage:
    """A prompt task. Either prompt_text or prompt_id must be set to be dispatchable."""
    prompt_text: Optional[str] = None
    requested_model: Optional[str] = None
    enhance: Optional[bool] = None
    prompt_id: Optional[str] = None

    @property
    def has_source(self) -> bool:
        return bool(self.prompt_text) or bool(self.prompt_id)

    def to_dict(self) -> dict[str, Any]:
        d = {}
        for attr, (key, _) in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                d[key] = value
        return d

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskMessage:
        values = {}
        for attr, (key, expected) in _WIRE_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, expected):
                raise MessageDecodeError(
                    f"Field '{key}' must be {expected.__name__}, got {type(value).__name__}"
                )
            values[attr] = value
        return cls(**values)

    @classmethod
    def from_json(cls, body: bytes | str) -> TaskMessage:
        try:
            if isinstance(body, bytes):
                body = body.decode("utf-8")
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageDecodeError(f"Invalid message body: {e}") from e
        if not isinstance(data, dict):
            raise MessageDecodeError(
                f"Message body must be a JSON object, got {type(data).__name__}"
            )
        return cls.from_dict(data)
