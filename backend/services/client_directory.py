"""
Client and service record lookup for letter generation.

Thin read-only access to the practice's clients/services collections. Records
are returned as stored (snake_case fields) with the Mongo _id projected out.
"""
import logging
from typing import Any, Dict, Optional

from database import database

logger = logging.getLogger(__name__)


async def find_client(client_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.clients.find_one({"client_id": client_id}, {"_id": 0})


async def find_service(service_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.services.find_one({"service_id": service_id}, {"_id": 0})


async def get_primary_contact(client_id: str) -> Optional[Dict[str, Any]]:
    """Primary contact party for a client, used when the client has no main email/phone."""
    db = database.get_db()
    return await db.client_contacts.find_one(
        {"client_id": client_id, "primary_contact": True},
        {"_id": 0},
    )
