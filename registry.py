"""
Model registry

A ModelRegistry maps a model name to a Model handle bound to the
collection of the same (lowercased) name. Handles are created once per
name and reused; asking again for a registered name returns the same
handle instead of redefining it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Type, Union, get_args, get_origin

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument

logger = logging.getLogger(__name__)


def as_object_id(value) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    # raises bson.errors.InvalidId for malformed ids
    return ObjectId(str(value))


def collect_refs(schema: Type[BaseModel], prefix: str = "") -> Dict[str, str]:
    """Return {stored path: target model name} for every Ref() field of schema,
    descending into nested models and lists of nested models."""
    refs = {}
    for name, field in schema.model_fields.items():
        path = prefix + (field.alias or name)
        extra = field.json_schema_extra
        if isinstance(extra, dict) and "ref" in extra:
            refs[path] = extra["ref"]
            continue
        annotation = field.annotation
        if get_origin(annotation) in (list, List):
            annotation = get_args(annotation)[0]
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            refs.update(collect_refs(annotation, path + "."))
    return refs


class Model:
    """Handle for create/read/update/delete against one collection."""

    def __init__(self, name: str, schema: Type[BaseModel], collection, registry: "ModelRegistry", unique: Iterable[str] = ()):
        self.name = name
        self.schema = schema
        self.collection = collection
        self.registry = registry
        self.unique = list(unique)
        self.refs = collect_refs(schema)

    def __repr__(self):
        return f"<Model {self.name} collection={self.collection.name!r}>"

    def create(self, data: Union[dict, BaseModel]) -> dict:
        """Validate data against the schema, apply defaults and timestamps
        and insert it. Returns the stored document including its _id."""
        if isinstance(data, BaseModel):
            data = data.model_dump(by_alias=True)
        doc = self.schema.model_validate(data).model_dump(by_alias=True)
        now = datetime.now(timezone.utc)
        doc["createdAt"] = now
        doc["updatedAt"] = now
        result = self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    def get_or_create(self, query: dict, defaults: Optional[dict] = None) -> dict:
        """Return the document matching query, inserting it (validated, with
        defaults and timestamps) in the same atomic upsert if there is none."""
        doc = self.schema.model_validate({**(defaults or {}), **query}).model_dump(by_alias=True)
        now = datetime.now(timezone.utc)
        doc["createdAt"] = now
        doc["updatedAt"] = now
        on_insert = {k: v for k, v in doc.items() if k not in query}
        return self.collection.find_one_and_update(
            query,
            {"$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def ensure_indexes(self):
        for field in self.unique:
            try:
                self.collection.create_index(field, unique=True)
            except Exception as e:
                logger.warning("Unable to ensure unique index %s.%s: %s", self.name, field, e)

    def find(self, query: Optional[dict] = None, limit: int = 0, sort: Optional[List] = None) -> List[dict]:
        cursor = self.collection.find(query or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_one(self, query: dict) -> Optional[dict]:
        return self.collection.find_one(query)

    def find_by_id(self, id) -> Optional[dict]:
        return self.collection.find_one({"_id": as_object_id(id)})

    def update_one(self, query: dict, changes: dict):
        changes = {**changes, "updatedAt": datetime.now(timezone.utc)}
        return self.collection.update_one(query, {"$set": changes})

    def update_by_id(self, id, changes: dict):
        return self.update_one({"_id": as_object_id(id)}, changes)

    def delete_one(self, query: dict):
        return self.collection.delete_one(query)

    def count(self, query: Optional[dict] = None) -> int:
        return self.collection.count_documents(query or {})

    def populate(self, docs: Union[dict, List[dict]], *paths: str):
        """Replace the ObjectIds stored at each reference path with the
        documents they point to (None when the target no longer exists)."""
        for path in paths:
            if path not in self.refs:
                raise ValueError(f"{self.name} has no reference at {path!r}")
            target = self.registry.get_or_register(self.refs[path])
            _resolve(docs, path.split("."), target)
        return docs


def _resolve(node, parts: List[str], target: Model):
    if isinstance(node, list):
        for item in node:
            _resolve(item, parts, target)
        return
    if not isinstance(node, dict) or parts[0] not in node:
        return
    key = parts[0]
    if len(parts) > 1:
        _resolve(node[key], parts[1:], target)
    elif isinstance(node[key], ObjectId):
        node[key] = target.find_by_id(node[key])


class ModelRegistry:
    """Name -> Model lookup-or-create, owned by whoever owns the database."""

    def __init__(self, database):
        self.database = database
        self._models: Dict[str, Model] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._models

    def __iter__(self):
        return iter(self._models.values())

    def get_or_register(self, name: str, schema: Optional[Type[BaseModel]] = None, unique: Iterable[str] = ()) -> Model:
        model = self._models.get(name)
        if model is not None:
            return model
        if schema is None:
            raise KeyError(f"Model {name!r} is not registered")
        model = Model(name, schema, self.database[name.lower()], self, unique=unique)
        self._models[name] = model
        logger.info("Registered model %s (collection %r)", name, model.collection.name)
        return model

    def ensure_indexes(self):
        """Create the declared unique indexes. Needs the database; run once at startup."""
        for model in self._models.values():
            model.ensure_indexes()
