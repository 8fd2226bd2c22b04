"""Shared base for models persisted as store documents"""

from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Any, Dict


class DocumentModel(BaseModel):
    """Model whose stored form uses camelCase field names"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"
        use_enum_values = True
        validate_default = True

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the store (camelCase keys, native datetimes)"""
        return self.model_dump(by_alias=True, exclude_none=True)
