import logging
from typing import Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient, ReturnDocument
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from utils import utcnow

logger = logging.getLogger(__name__)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def ensure_indexes(database: Database):
    """Create the indexes the list, nearby and stats queries rely on."""
    database["user"].create_index("email", unique=True)

    database["donation"].create_index([("status", ASCENDING), ("location.coordinates", GEOSPHERE)])
    database["donation"].create_index([("donor", ASCENDING), ("createdAt", DESCENDING)])
    database["donation"].create_index("expiryTime")
    database["donation"].create_index([("isUrgent", ASCENDING), ("status", ASCENDING)])

    database["request"].create_index([("status", ASCENDING), ("location.coordinates", GEOSPHERE)])
    database["request"].create_index([("requester", ASCENDING), ("createdAt", DESCENDING)])
    database["request"].create_index("neededBy")
    database["request"].create_index([("urgency", ASCENDING), ("status", ASCENDING)])
    database["request"].create_index([("isUrgent", ASCENDING), ("status", ASCENDING)])
    logger.info("Database indexes ensured on %s", database.name)


# Helper functions for common database operations
def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> dict:
    """Insert a single document with timestamps

    Args:
        database: Target database
        collection_name: Name of the MongoDB collection
        data: Pydantic model instance or dict. Models are dumped with their camelCase aliases.

    Returns:
        dict: The stored document, including its `_id`
    """
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict["createdAt"] = now
    data_dict["updatedAt"] = now

    result = database[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def update_document(database: Database, collection_name: str, filter_dict: dict, update_data: Union[BaseModel, dict]):
    """Set fields on one document and return the updated document (or None when nothing matched)."""
    if isinstance(update_data, BaseModel):
        update_dict = update_data.model_dump(by_alias=True, exclude_unset=True)
    else:
        update_dict = update_data.copy()

    update_dict["updatedAt"] = utcnow()

    return database[collection_name].find_one_and_update(
        filter_dict, {"$set": update_dict}, return_document=ReturnDocument.AFTER
    )


def delete_document(database: Database, collection_name: str, filter_dict: dict) -> bool:
    """Delete a document"""
    result = database[collection_name].delete_one(filter_dict)
    return result.deleted_count > 0
