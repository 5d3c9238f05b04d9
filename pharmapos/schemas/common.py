"""
PharmaPOS Common Schemas
Shared request validation helpers
"""
from typing import Any, Dict, List, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from pharmapos.core.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


class RequestModel(BaseModel):
    """Base for request payloads: unknown fields are rejected, strings stripped"""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def field_errors(error: PydanticValidationError) -> Dict[str, List[str]]:
    """Group pydantic error messages by dotted field path"""
    grouped: Dict[str, List[str]] = {}
    for detail in error.errors():
        field = ".".join(str(part) for part in detail["loc"]) or "__root__"
        grouped.setdefault(field, []).append(detail["msg"])
    return grouped


def validate_payload(schema: Type[M], payload: Any) -> M:
    """
    Validate a request payload against a schema

    Raises:
        ValidationError: naming every failing field
    """
    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        errors = field_errors(e)
        summary = "; ".join(f"{field}: {', '.join(messages)}" for field, messages in errors.items())
        exc = ValidationError(f"Invalid {schema.__name__}: {summary}", entity=schema.__name__)
        exc.field_errors = errors
        raise exc from e
