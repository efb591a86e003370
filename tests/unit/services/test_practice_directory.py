"""
Unit tests for the GP practice directory lookup.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from gp_booking.services.errors import StorageError
from gp_booking.services.models import PracticeRecord
from gp_booking.services.practice_directory import PracticeDirectory
from gp_booking.services.storage import InMemoryPracticeStore
from gp_booking.settings import Settings


def make_settings(**overrides):
    return Settings(_env_file=None, environment="development", **overrides)


@pytest.fixture
def stored_practice():
    return PracticeRecord(
        ods_code="D22222",
        name="Hillside Practice",
        endpoint="https://hillside.example.nhs.uk/fhir",
        asid="JKL123456789",
        notification_channels=("mesh",),
    )


@pytest.fixture
def failing_store():
    store = Mock()
    store.get = AsyncMock(side_effect=StorageError("connection refused"))
    store.list_all = AsyncMock(side_effect=StorageError("connection refused"))
    return store


class TestPracticeLookup:
    """Test lookup against the store and the sample fallback."""

    @pytest.mark.asyncio
    async def test_store_hit(self, stored_practice):
        directory = PracticeDirectory(
            make_settings(), InMemoryPracticeStore([stored_practice])
        )

        practice = await directory.get_practice("D22222")

        assert practice == stored_practice

    @pytest.mark.asyncio
    async def test_store_miss_does_not_consult_samples(self, stored_practice):
        """A reachable store is authoritative, even for sample codes."""
        directory = PracticeDirectory(
            make_settings(), InMemoryPracticeStore([stored_practice])
        )

        assert await directory.get_practice("A12345") is None

    @pytest.mark.asyncio
    async def test_inactive_practice_is_not_found(self):
        inactive = PracticeRecord(
            ods_code="E33333",
            name="Closed Surgery",
            endpoint="https://closed.example.nhs.uk/fhir",
            asid="MNO123456789",
            active=False,
        )
        directory = PracticeDirectory(make_settings(), InMemoryPracticeStore([inactive]))

        assert await directory.get_practice("E33333") is None

    @pytest.mark.asyncio
    async def test_no_store_uses_samples(self):
        directory = PracticeDirectory(make_settings())

        practice = await directory.get_practice("A12345")

        assert practice.name == "Example Medical Centre"
        assert practice.endpoint == "https://gp.example.nhs.uk/gpconnect"
        assert practice.asid == "ABC123456789"

    @pytest.mark.asyncio
    async def test_unknown_code_not_found_in_samples(self):
        directory = PracticeDirectory(make_settings())

        assert await directory.get_practice("Z99999") is None

    @pytest.mark.asyncio
    async def test_storage_failure_falls_back_uniformly(self, failing_store):
        """Every code gets the same treatment when the store is down."""
        directory = PracticeDirectory(make_settings(), failing_store)

        assert (await directory.get_practice("A12345")).ods_code == "A12345"
        assert (await directory.get_practice("C11111")).ods_code == "C11111"
        assert await directory.get_practice("Z99999") is None

    @pytest.mark.asyncio
    async def test_storage_failure_propagates_without_fallback(self, failing_store):
        directory = PracticeDirectory(
            make_settings(practice_lookup_fallback=False), failing_store
        )

        with pytest.raises(StorageError):
            await directory.get_practice("A12345")

    @pytest.mark.asyncio
    async def test_no_store_and_no_fallback_finds_nothing(self):
        directory = PracticeDirectory(make_settings(practice_lookup_fallback=False))

        assert await directory.get_practice("A12345") is None


class TestPracticeListing:
    @pytest.mark.asyncio
    async def test_lists_samples_without_store(self):
        directory = PracticeDirectory(make_settings())

        practices = await directory.list_practices()

        assert [p.ods_code for p in practices] == ["A12345", "B67890", "C11111"]

    @pytest.mark.asyncio
    async def test_lists_store_contents(self, stored_practice):
        directory = PracticeDirectory(
            make_settings(), InMemoryPracticeStore([stored_practice])
        )

        assert await directory.list_practices() == [stored_practice]

    @pytest.mark.asyncio
    async def test_listing_falls_back_on_storage_error(self, failing_store):
        directory = PracticeDirectory(make_settings(), failing_store)

        assert len(await directory.list_practices()) == 3
