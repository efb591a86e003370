"""
GP practice directory.

Resolves an ODS organization code to the practice's GP Connect endpoint and
ASID. When the store is unavailable the fixed sample directory is consulted
for every code alike, so lookups either succeed or report not-found.
"""

import logging
from typing import List, Optional

from ..settings import Settings
from .errors import StorageError
from .models import PracticeRecord

logger = logging.getLogger(__name__)

SAMPLE_PRACTICES: List[PracticeRecord] = [
    PracticeRecord(
        id="1",
        ods_code="A12345",
        name="Example Medical Centre",
        endpoint="https://gp.example.nhs.uk/gpconnect",
        asid="ABC123456789",
    ),
    PracticeRecord(
        id="2",
        ods_code="B67890",
        name="Community Health Practice",
        endpoint="https://community.example.nhs.uk/fhir",
        asid="DEF123456789",
    ),
    PracticeRecord(
        id="3",
        ods_code="C11111",
        name="Riverside Surgery",
        endpoint="https://riverside.example.nhs.uk/fhir",
        asid="GHI123456789",
    ),
]


class PracticeDirectory:
    """Lookup of active practices by ODS code."""

    def __init__(self, settings: Settings, store=None):
        """
        Args:
            settings: Application settings
            store: Practice store, or None when persistence is not configured
        """
        self.settings = settings
        self.store = store

    def _sample_lookup(self, ods_code: str) -> Optional[PracticeRecord]:
        for practice in SAMPLE_PRACTICES:
            if practice.ods_code == ods_code and practice.active:
                return practice
        return None

    async def get_practice(self, ods_code: str) -> Optional[PracticeRecord]:
        """
        Get the active practice registered under an ODS code.

        Args:
            ods_code: Organization code of the practice

        Returns:
            The practice record, or None if no active practice matches

        Raises:
            StorageError: If the store fails and sample fallback is disabled
        """
        if self.store is None:
            if self.settings.practice_lookup_fallback:
                return self._sample_lookup(ods_code)
            return None

        try:
            practice = await self.store.get(ods_code)
        except StorageError as e:
            logger.error(f"Error fetching GP practice {ods_code}: {e}")
            if not self.settings.practice_lookup_fallback:
                raise
            logger.info(f"Using sample practice directory for {ods_code}")
            return self._sample_lookup(ods_code)

        if practice is None or not practice.active:
            return None
        return practice

    async def list_practices(self) -> List[PracticeRecord]:
        """List active practices, from the store when it is reachable."""
        if self.store is not None:
            try:
                return [p for p in await self.store.list_all() if p.active]
            except StorageError as e:
                logger.warning(f"Practice listing unavailable: {e}")
                if not self.settings.practice_lookup_fallback:
                    raise
        elif not self.settings.practice_lookup_fallback:
            return []
        return [p for p in SAMPLE_PRACTICES if p.active]
