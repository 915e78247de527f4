"""
Record to document conversion.

A converter turns one loaded record into zero or one index document.
Which converter serves which entity type is static configuration.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from sqlalchemy import inspect

from .errors import ConversionError

ID_FIELD = "_id"
TYPE_FIELD = "_type"


def document_id(entity_type: str, key: Any) -> str:
    return f"{entity_type}:{key}"


class DocumentConverter:
    """Converts a record to an index document, or None when not indexable."""

    def convert(self, record: Any) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class ColumnDocumentConverter(DocumentConverter):
    """
    Maps column attributes of a mapped record to document fields.

    Args:
        fields: Attribute names to copy (default: every column attribute)
        indexable: Predicate; records for which it returns False are not indexed
        entity_type: Type name stored in the document (default: class name)
    """

    def __init__(
        self,
        fields: Optional[Iterable[str]] = None,
        indexable: Optional[Callable[[Any], bool]] = None,
        entity_type: Optional[str] = None,
    ):
        self.fields = list(fields) if fields is not None else None
        self.indexable = indexable
        self.entity_type = entity_type

    def convert(self, record: Any) -> Optional[Dict[str, Any]]:
        if self.indexable is not None and not self.indexable(record):
            return None

        state = inspect(record)
        mapper = state.mapper
        key = state.identity[0] if state.identity else None
        fields = self.fields if self.fields is not None else [a.key for a in mapper.column_attrs]
        entity_type = self.entity_type or mapper.class_.__name__

        document: Dict[str, Any] = {
            ID_FIELD: document_id(entity_type, key),
            TYPE_FIELD: entity_type,
        }
        for name in fields:
            try:
                value = getattr(record, name)
            except AttributeError as e:
                raise ConversionError(f"{entity_type} has no field {name!r}") from e
            document[name] = _plain(value)
        return document


def _plain(value: Any) -> Any:
    """Render values so documents serialize to JSON unchanged."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        raise ConversionError("Binary values cannot be indexed")
    return value


class ConverterRegistry:
    """Static entity type -> converter mapping."""

    def __init__(
        self,
        converters: Optional[Mapping[str, DocumentConverter]] = None,
        default: Optional[DocumentConverter] = None,
    ):
        self._converters = dict(converters or {})
        self.default = default if default is not None else ColumnDocumentConverter()

    def register(self, entity_type: str, converter: DocumentConverter) -> None:
        self._converters[entity_type] = converter

    def for_type(self, entity_type: str) -> DocumentConverter:
        return self._converters.get(entity_type, self.default)
