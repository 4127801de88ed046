"""
Read-only access to patient medication timetables in MongoDB.

The scheduler reads the patients collection once per tick. Documents are
written by the application's HTTP API; this module never modifies them.

Expected document shape:

    {
        "_id": ObjectId(...),
        "name": "Jane Doe",
        "email": "jane@example.com",
        "med_schedule": {
            "Lisinopril": {
                "active": true,
                "schedule": {"Monday": ["08:00", "8:00 PM"]}
            }
        }
    }
"""

from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from app.config import settings
from app.core.models import WEEKDAYS, MedicationEntry, PatientSchedule
from app.utils.logger import get_logger


logger = get_logger(__name__)


class StoreError(Exception):
    """Raised when medication schedules cannot be read."""
    pass


class DatabaseNotConnectedError(StoreError):
    """Raised when the store is queried before connect() was called."""
    pass


SCHEDULED_PATIENTS_QUERY = {'med_schedule': {'$exists': True, '$ne': {}}}
SCHEDULE_PROJECTION = {'name': 1, 'email': 1, 'med_schedule': 1}


def _parse_medication(name: str, raw: Any) -> Optional[MedicationEntry]:
    if not isinstance(raw, dict):
        logger.warning(f"Medication {name!r} is not a document, skipping")
        return None

    schedule: Dict[str, List[str]] = {}
    raw_schedule = raw.get('schedule') or {}
    if not isinstance(raw_schedule, dict):
        logger.warning(f"Schedule for {name!r} is not a document, ignoring it")
        raw_schedule = {}

    for day, times in raw_schedule.items():
        if day not in WEEKDAYS:
            logger.warning(f"Unknown weekday {day!r} in schedule for {name!r}")
            continue
        if not isinstance(times, list):
            logger.warning(f"Times for {name!r} on {day} are not a list")
            continue
        valid = [t.strip() for t in times if isinstance(t, str) and t.strip()]
        if valid:
            schedule[day] = valid

    return MedicationEntry(
        name=name,
        active=bool(raw.get('active', False)),
        schedule=schedule,
    )


def parse_patient_document(doc: Dict[str, Any]) -> Optional[PatientSchedule]:
    """
    Convert a raw patient document into a PatientSchedule.

    Malformed medication entries are dropped with a warning instead of
    failing the whole document.

    Args:
        doc: Document from the patients collection

    Returns:
        PatientSchedule, or None if the document has no usable timetable
    """
    med_schedule = doc.get('med_schedule')
    if not isinstance(med_schedule, dict) or not med_schedule:
        return None

    patient_id = str(doc.get('_id'))
    label = doc.get('name') or doc.get('email') or patient_id

    medications = {}
    for name, raw in med_schedule.items():
        entry = _parse_medication(name, raw)
        if entry is not None:
            medications[name] = entry

    if not medications:
        return None

    return PatientSchedule(patient_id=patient_id, label=label, medications=medications)


class ScheduleStore:
    """
    Async MongoDB reader for patients with a medication timetable.

    Args:
        collection: Pre-built collection to read from. When given, connect()
            does not create a client. Used by tests.
    """

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.collection = collection

    async def connect(self, mongodb_uri: Optional[str] = None):
        """
        Connect to MongoDB.

        Args:
            mongodb_uri: Connection string. If None, uses settings.mongodb_uri.

        Raises:
            ValueError: If no connection string is configured
        """
        if self.collection is not None:
            return

        uri = mongodb_uri or settings.mongodb_uri
        if not uri:
            raise ValueError("MONGODB_URI not configured in settings")

        self.client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=5000)
        if settings.mongodb_db:
            database = self.client[settings.mongodb_db]
        else:
            database = self.client.get_default_database(default='recovery')
        self.collection = database[settings.patients_collection]

        logger.info(
            f"Schedule store using {database.name}.{settings.patients_collection}"
        )

    async def close(self):
        """Close the MongoDB client."""
        if self.client is not None:
            self.client.close()
            self.client = None
            self.collection = None
            logger.info("Closed MongoDB connection")

    def _ensure_connected(self):
        if self.collection is None:
            raise DatabaseNotConnectedError(
                "Schedule store not connected. Call await store.connect() first."
            )

    async def fetch_active_schedules(self) -> List[PatientSchedule]:
        """
        Fetch every patient with a non-empty medication timetable.

        Returns:
            Parsed schedules in collection order

        Raises:
            StoreError: If the query fails or the store is not connected
        """
        self._ensure_connected()

        try:
            cursor = self.collection.find(SCHEDULED_PATIENTS_QUERY, SCHEDULE_PROJECTION)
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise StoreError(f"Failed to read medication schedules: {e}") from e

        schedules = []
        for doc in documents:
            schedule = parse_patient_document(doc)
            if schedule is not None:
                schedules.append(schedule)

        logger.debug(f"Found {len(schedules)} patients with medication schedules")
        return schedules
