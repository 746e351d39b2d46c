"""Serialization of vault items to the bytes that get encrypted."""
import json

from pydantic import ValidationError

from .errors import MalformedRecordError
from .models import VaultItem


def encode(item: VaultItem) -> bytes:
    """Serialize an item as UTF-8 JSON with camelCase keys."""
    return item.model_dump_json(by_alias=True).encode("utf-8")


def decode(data: bytes) -> VaultItem:
    """Parse bytes produced by `encode`, raising MalformedRecordError on bad input."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedRecordError("record is not valid UTF-8 JSON") from exc
    if not isinstance(obj, dict):
        raise MalformedRecordError("record is not a JSON object")
    try:
        return VaultItem.model_validate(obj)
    except ValidationError as exc:
        fields = sorted({str(e["loc"][0]) for e in exc.errors() if e["loc"]})
        raise MalformedRecordError(f"record has missing or invalid fields: {', '.join(fields)}") from exc
