"""
Seed the Redis practice directory.

Writes the sample practices, or the practices listed in a JSON file, into the
store the booking service reads from.

Usage:
    python -m gp_booking.seed [practices.json]
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .audit import audit_logger_instance
from .services.errors import ConfigurationError
from .services.models import PracticeRecord
from .services.practice_directory import SAMPLE_PRACTICES
from .services.storage import RedisPracticeStore
from .settings import get_settings

logger = logging.getLogger(__name__)


def load_practices(path: Optional[str] = None) -> List[PracticeRecord]:
    """
    Load practice records from a JSON file, or the samples when no path is given.

    The file holds a list of objects with ods_code, name, endpoint, asid and
    optionally active and notification_channels.
    """
    if path is None:
        return list(SAMPLE_PRACTICES)

    with Path(path).open(encoding="utf-8") as handle:
        entries = json.load(handle)
    return [PracticeRecord.from_dict(entry) for entry in entries]


async def seed_practices(store: RedisPracticeStore, practices: List[PracticeRecord]) -> int:
    """Write each practice to the store and return how many were written."""
    for practice in practices:
        await store.put(practice)
        logger.info(f"Seeded practice {practice.ods_code} ({practice.name})")
    return len(practices)


async def main(path: Optional[str] = None) -> int:
    settings = get_settings()
    if not settings.redis_configured:
        raise ConfigurationError("REDIS_URL must be set to seed the practice directory")

    store = RedisPracticeStore(settings.redis_url)
    try:
        count = await seed_practices(store, load_practices(path))
    finally:
        await store.disconnect()

    audit_logger_instance.log_configuration_change(
        "Practice directory seeded",
        additional_data={"practices": count, "source": path or "samples"},
    )
    return count


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    seeded = asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
    print(f"Seeded {seeded} practices")
