"""
Pytest configuration and shared fixtures
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from delivery_rotation.delivery.handlers import DeliveryCommandHandlers
from delivery_rotation.delivery.projections import ProviderRegistry
from delivery_rotation.kernel.event_store import SQLiteEventStore
from delivery_rotation.kernel.ids import SequentialIdFactory
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.time import TestTimeProvider
from delivery_rotation.service import DeliveryRotation
from tests.helpers import RecordingAlertSender


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup (WAL mode leaves side files)
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def event_store(temp_db: Path) -> SQLiteEventStore:
    """Provide a fresh event store for each test"""
    return SQLiteEventStore(temp_db)


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> RotationPolicy:
    """Default rotation policy (5 attempts, 25 km, 15 minute deadline)"""
    return RotationPolicy()


@pytest.fixture
def id_factory() -> SequentialIdFactory:
    return SequentialIdFactory()


@pytest.fixture
def alerts() -> RecordingAlertSender:
    return RecordingAlertSender()


@pytest.fixture
def rotation(
    temp_db: Path,
    policy: RotationPolicy,
    test_time: TestTimeProvider,
    id_factory: SequentialIdFactory,
    alerts: RecordingAlertSender,
) -> DeliveryRotation:
    """Rotation service on a fresh database with a frozen clock"""
    return DeliveryRotation(
        temp_db,
        policy=policy,
        time_provider=test_time,
        id_factory=id_factory,
        alert_sender=alerts,
    )


# =============================================================================
# Handler-level Fixtures
# =============================================================================


@pytest.fixture
def delivery_handlers(
    test_time: TestTimeProvider, policy: RotationPolicy, id_factory: SequentialIdFactory
) -> DeliveryCommandHandlers:
    """
    Provide delivery command handlers for testing

    Handlers are stateless - they take projections as parameters.
    """
    return DeliveryCommandHandlers(test_time, policy, id_factory)


@pytest.fixture
def provider_registry() -> ProviderRegistry:
    """Fresh provider registry projection"""
    return ProviderRegistry()
