import orjson
from fastapi.responses import ORJSONResponse
from bson import ObjectId, Decimal128
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict
import structlog

logger = structlog.get_logger(__name__)


def to_bson(obj: Any) -> Any:
    """Recursively convert python values into types the BSON encoder accepts."""
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(by_alias=True)
    if isinstance(obj, dict):
        return {k: to_bson(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [to_bson(i) for i in obj]
    if isinstance(obj, Decimal):
        return Decimal128(str(obj))
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, date) and not isinstance(obj, datetime):
        return datetime(obj.year, obj.month, obj.day)
    return obj


def from_bson(obj: Any) -> Any:
    """Inverse of to_bson for the types we store: Decimal128 back to Decimal."""
    if isinstance(obj, dict):
        return {k: from_bson(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [from_bson(i) for i in obj]
    if isinstance(obj, Decimal128):
        return obj.to_decimal()
    return obj


class MongoModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        extra="ignore",
    )

    def to_document(self) -> dict:
        return to_bson(self.model_dump(by_alias=True))

    @classmethod
    def from_document(cls, doc: Optional[dict]):
        if doc is None:
            return None
        return cls.model_validate(from_bson(doc))


def normalize_bson(obj: Any) -> Any:
    """Recursively convert ObjectId, Decimal, datetime and date to JSON-safe types."""
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(by_alias=True)
    if isinstance(obj, list):
        return [normalize_bson(i) for i in obj]
    if isinstance(obj, tuple):
        return [normalize_bson(i) for i in obj]
    if isinstance(obj, dict):
        return {str(k): normalize_bson(v) for k, v in obj.items()}
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, Decimal128):
        obj = obj.to_decimal()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return obj


# -------------------------------------------------------------------
# ORJSONResponse for FastAPI that understands Mongo / Decimal content
# -------------------------------------------------------------------
class MongoORJSONResponse(ORJSONResponse):
    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        try:
            return orjson.dumps(normalize_bson(content))
        except TypeError as e:
            logger.warning("orjson_normalization_failed", error=str(e))
            return orjson.dumps(content, default=str)
