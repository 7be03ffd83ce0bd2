# utils/validators.py

from typing import Any, Dict, List, Type, TypeVar
from urllib.parse import urlparse
from pydantic import BaseModel, ValidationError
from loguru import logger

ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_dict_with_pydantic_model(data: Dict[str, Any], model: Type[ModelT]) -> ModelT:
    """
    Validates a dictionary against a Pydantic model.
    Returns the validated model instance or raises a ValidationError.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error(f"Validation error for data against model {model.__name__}: {e}")
        raise


def is_valid_url(url: str, schemes: List[str] = None) -> bool:
    """Basic URL validation, optionally restricted to a set of schemes."""
    try:
        result = urlparse(url)
    except ValueError:
        return False
    if not all([result.scheme, result.netloc]):
        return False
    return schemes is None or result.scheme in schemes

