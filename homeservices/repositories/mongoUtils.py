from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel


def encode_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(item) for item in value]
    return value


def to_mongo(model: BaseModel, exclude: set = None) -> Dict[str, Any]:
    """Dump a value model to a BSON-ready dict, ``_id`` included only when set."""
    data = model.model_dump(by_alias=True, exclude=exclude)
    if data.get("_id") is None:
        data.pop("_id", None)
    return encode_value(data)


def page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(page, 1)
    limit = max(min(limit, 50), 1)
    return (page - 1) * limit, limit
