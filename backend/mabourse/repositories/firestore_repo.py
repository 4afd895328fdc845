"""
Firestore Transport

Remote snapshot store shared by every device signed in to one account.

Data Structure:
    users/{user_id}                           - Sync metadata (sync_id, device_id, last_sync_time)
    users/{user_id}/{entity_type}/{record_id} - One document per synchronized record

Google API failures never leave this module as-is: they are translated to
TransportError (TransportTimeoutError for deadline overruns) so the sync
service can abort a pass without knowing about Firestore.
"""

from typing import Any, Optional

import firebase_admin
from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from mabourse.core.exceptions import TransportError, TransportTimeoutError
from mabourse.core.logging import get_logger
from mabourse.schemas.models import SyncState

logger = get_logger("mabourse.repositories.firestore")


class FirestoreTransport:
    """Pull and push id-keyed snapshots for one user account."""

    # Firestore batch write limit
    BATCH_SIZE = 500

    def __init__(self, user_id: str, timeout: float = 30.0, client: Optional[Any] = None) -> None:
        if client is None:
            # Initialize Firebase Admin SDK with Application Default Credentials
            if not firebase_admin._apps:
                firebase_admin.initialize_app()
            client = firestore.client()

        self.db = client
        self.user_id = user_id
        self.timeout = timeout
        self.users_collection = "users"

    def _user_ref(self):
        return self.db.collection(self.users_collection).document(self.user_id)

    def _entity_ref(self, entity_type: str):
        return self._user_ref().collection(entity_type)

    def _translate(self, error: Exception, action: str, entity_type: Optional[str] = None) -> TransportError:
        message = f"Firestore {action} failed for {entity_type or 'sync metadata'}: {error}"
        if isinstance(error, (google_exceptions.DeadlineExceeded, TimeoutError)):
            return TransportTimeoutError(message, entity_type=entity_type)
        return TransportError(message, entity_type=entity_type)

    # =========================================================================
    # Snapshot Methods
    # =========================================================================

    def pull_snapshot(self, entity_type: str) -> dict[str, dict[str, Any]]:
        """
        Load every remote record of an entity type.

        Args:
            entity_type: Collection name (accounts, transactions, ...)

        Returns:
            Mapping of record id to record

        Raises:
            TransportError: If Firestore is unreachable or returns malformed data
        """
        try:
            docs = list(self._entity_ref(entity_type).stream(timeout=self.timeout))
        except (google_exceptions.GoogleAPIError, TimeoutError) as e:
            raise self._translate(e, "pull", entity_type) from e

        snapshot: dict[str, dict[str, Any]] = {}
        for doc in docs:
            data = doc.to_dict()
            if not isinstance(data, dict):
                raise TransportError(
                    f"Malformed {entity_type} document {doc.id}",
                    entity_type=entity_type,
                )
            data.setdefault("id", doc.id)
            snapshot[doc.id] = data

        logger.debug(f"Pulled {len(snapshot)} {entity_type} records for user {self.user_id}")
        return snapshot

    def push_snapshot(self, entity_type: str, records: dict[str, dict[str, Any]]) -> None:
        """
        Replace the remote records of an entity type with the given snapshot.

        Documents whose id is not in ``records`` are deleted.

        Args:
            entity_type: Collection name
            records: Mapping of record id to record

        Raises:
            TransportError: If a write fails
        """
        collection_ref = self._entity_ref(entity_type)
        try:
            existing_ids = {doc.id for doc in collection_ref.stream(timeout=self.timeout)}
            items = list(records.items())

            # Process in batches to stay within Firestore limits
            for i in range(0, len(items), self.BATCH_SIZE):
                batch = self.db.batch()
                for record_id, record in items[i:i + self.BATCH_SIZE]:
                    batch.set(collection_ref.document(str(record_id)), record)
                batch.commit(timeout=self.timeout)

            stale_ids = sorted(existing_ids - {str(record_id) for record_id in records})
            for i in range(0, len(stale_ids), self.BATCH_SIZE):
                batch = self.db.batch()
                for record_id in stale_ids[i:i + self.BATCH_SIZE]:
                    batch.delete(collection_ref.document(record_id))
                batch.commit(timeout=self.timeout)
        except (google_exceptions.GoogleAPIError, TimeoutError) as e:
            raise self._translate(e, "push", entity_type) from e

        logger.debug(
            f"Pushed {len(records)} {entity_type} records for user {self.user_id} "
            f"({len(stale_ids)} stale removed)"
        )

    # =========================================================================
    # Sync Metadata Methods
    # =========================================================================

    def pull_sync_metadata(self) -> dict[str, Any] | None:
        try:
            doc = self._user_ref().get(timeout=self.timeout)
        except (google_exceptions.GoogleAPIError, TimeoutError) as e:
            raise self._translate(e, "metadata pull") from e

        if not doc.exists:
            return None
        return doc.to_dict()

    def push_sync_metadata(self, state: SyncState) -> None:
        payload = {
            "sync_id": state.sync_id,
            "device_id": state.device_id,
            "last_sync_time": state.last_sync_time.isoformat() if state.last_sync_time else None,
        }
        try:
            self._user_ref().set(payload, merge=True, timeout=self.timeout)
        except (google_exceptions.GoogleAPIError, TimeoutError) as e:
            raise self._translate(e, "metadata push") from e
