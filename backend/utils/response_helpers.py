"""
Response helper utilities: the success envelope, pagination and ORM-to-schema conversion
"""
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar
import math
import uuid
from pydantic import BaseModel
from sqlalchemy import inspect

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class ApiResponse(BaseModel, Generic[T]):
    """Envelope every successful route responds with"""
    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


def convert_uuids_to_strings(obj: Any) -> Any:
    """
    Recursively convert UUID objects to strings in dicts and lists
    """
    if isinstance(obj, uuid.UUID):
        return str(obj)
    elif isinstance(obj, dict):
        return {key: convert_uuids_to_strings(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_uuids_to_strings(item) for item in obj]
    return obj


def model_to_dict(instance: Any) -> Dict[str, Any]:
    """
    Column values of a SQLAlchemy instance with UUIDs as strings.
    Relationships are left out so nothing triggers a lazy load.
    """
    mapper = inspect(instance).mapper
    return {
        attr.key: convert_uuids_to_strings(getattr(instance, attr.key))
        for attr in mapper.column_attrs
    }


def safe_model_validate(model_class: Type[M], data: Any, **extra: Any) -> M:
    """
    Validate a schema from an ORM instance or dict, with optional extra fields merged in
    """
    if isinstance(data, dict):
        clean_data = convert_uuids_to_strings(data)
    else:
        clean_data = model_to_dict(data)
    clean_data.update(convert_uuids_to_strings(extra))
    return model_class.model_validate(clean_data)


def safe_model_validate_list(model_class: Type[M], data_list: List[Any]) -> List[M]:
    return [safe_model_validate(model_class, item) for item in data_list]
