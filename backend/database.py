# backend/database.py

import os
import logging
import datetime
from datetime import timezone

from pymongo import MongoClient, ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import ConnectionFailure
from dotenv import load_dotenv
import certifi

from auth import get_password_hash

load_dotenv()  # keep support for .env

logger = logging.getLogger(__name__)

# --- Configuration ---
DATABASE_NAME = os.getenv("DATABASE_NAME", "mpms_db")
FREEZE_SETTINGS_ID = "freeze_settings"
FREEZE_FLAGS = ("allocation", "internalMarks", "presentations")

client: MongoClient = None
db: Database = None


def _resolve_mongo_uri() -> str:
    """
    Priority:
      1) Environment variable MONGO_URI
      2) .env variables (DEFAULT, LOCAL_URI, ATLAS_URI)
      3) Fallback: local mongodb
    """
    env_uri = os.getenv("MONGO_URI")
    if env_uri:
        logger.info("MONGO_URI resolved from ENV.")
        return env_uri

    local_uri = os.getenv("LOCAL_URI", "mongodb://127.0.0.1:27017/")
    atlas_uri = os.getenv("ATLAS_URI")
    default_mode = os.getenv("DEFAULT", "LOCAL").upper()

    if default_mode == "ATLAS" and atlas_uri:
        logger.info("MONGO_URI resolved from .env (DEFAULT=ATLAS).")
        return atlas_uri

    logger.info("MONGO_URI resolved from .env (DEFAULT=LOCAL).")
    return local_uri


def ensure_indexes(mongo_db: Database) -> None:
    """Creates the indexes the allocation and evaluation workflows rely on."""
    mongo_db.users.create_index("email", unique=True)
    mongo_db.users.create_index("role")

    mongo_db.mentor_profiles.create_index("userId", unique=True)

    mongo_db.mentor_requests.create_index([("studentId", ASCENDING), ("status", ASCENDING)])
    mongo_db.mentor_requests.create_index("mentorId")

    mongo_db.projects.create_index("mentorId")
    mongo_db.project_members.create_index(
        [("projectId", ASCENDING), ("userId", ASCENDING)], unique=True
    )
    mongo_db.project_members.create_index("userId")

    mongo_db.activity_logs.create_index("projectId")

    mongo_db.internal_evaluations.create_index(
        [("projectId", ASCENDING), ("studentId", ASCENDING), ("mentorId", ASCENDING)],
        unique=True,
    )
    mongo_db.presentation_evaluations.create_index("slotId")


def connect_to_mongo():
    """Establishes connection to MongoDB."""
    global client, db

    mongo_uri = _resolve_mongo_uri()
    logger.info("Connecting to MongoDB database '%s' ...", DATABASE_NAME)

    try:
        # certifi only for remote (Atlas) connections
        if "localhost" in mongo_uri or "127.0.0.1" in mongo_uri:
            client = MongoClient(mongo_uri, serverSelectionTimeoutMS=5000)
        else:
            client = MongoClient(mongo_uri, serverSelectionTimeoutMS=5000, tlsCAFile=certifi.where())

        client.admin.command("ping")
        db = client[DATABASE_NAME]
        logger.info("Connected to MongoDB database '%s'.", DATABASE_NAME)

        ensure_indexes(db)
        return db
    except ConnectionFailure:
        client = None
        db = None
        logger.exception("Failed to connect to MongoDB")
        raise
    except Exception:
        client = None
        db = None
        logger.exception("Unexpected MongoDB error")
        raise


def get_database() -> Database:
    if db is None:
        raise ConnectionFailure("Database is not connected. Check startup logs.")
    return db


def close_mongo_connection():
    global client, db
    if client:
        client.close()
        logger.info("MongoDB connection closed.")
    client = None
    db = None


def get_freeze_settings(mongo_db: Database) -> dict:
    """Reads the freeze singleton, creating it with every flag off on first read."""
    defaults = {flag: False for flag in FREEZE_FLAGS}
    defaults["version"] = 0
    return mongo_db.freeze_settings.find_one_and_update(
        {"_id": FREEZE_SETTINGS_ID},
        {"$setOnInsert": defaults},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def update_freeze_settings(mongo_db: Database, changes: dict, updated_by: str) -> dict:
    """Applies a partial flag update and bumps the settings version."""
    get_freeze_settings(mongo_db)
    update = {"$inc": {"version": 1}}
    set_doc = {flag: bool(value) for flag, value in changes.items() if flag in FREEZE_FLAGS}
    set_doc["updatedAt"] = datetime.datetime.now(timezone.utc)
    set_doc["updatedBy"] = updated_by
    update["$set"] = set_doc
    return mongo_db.freeze_settings.find_one_and_update(
        {"_id": FREEZE_SETTINGS_ID},
        update,
        return_document=ReturnDocument.AFTER,
    )


def create_admin_user(target_db: Database = None):
    """Seeds one admin account from ADMIN_EMAIL / ADMIN_PASSWORD when both are set."""
    target_db = target_db if target_db is not None else db
    if target_db is None:
        logger.warning("Cannot create admin user: Database not connected.")
        return None

    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password:
        return None

    email = email.lower()
    existing = target_db.users.find_one({"email": email})
    if existing:
        return existing["_id"]

    result = target_db.users.insert_one({
        "name": os.getenv("ADMIN_NAME", "Administrator"),
        "email": email,
        "hashedPassword": get_password_hash(password),
        "role": "ADMIN",
        "department": "Administration",
        "semester": None,
        "createdAt": datetime.datetime.now(timezone.utc),
    })
    logger.info("Seeded admin user %s", email)
    return result.inserted_id
