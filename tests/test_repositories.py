"""
Tests for the SQLAlchemy repositories and session unit that need no
database: row mapping, the version compare-and-set, commit and rollback.
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import OperationalError

from src.config import SlaStatus
from src.core.exceptions import ConcurrentModificationError, PersistenceError
from src.infrastructure import database
from src.sla.domain import SlaTracking
from src.sla.infrastructure.models import SlaTrackingModel
from src.sla.infrastructure.repositories import (
    SQLAlchemySlaTrackingRepository, _tracking_to_domain, _tracking_values, repositories_for_session,
)
from tests.conftest import T0, make_context


def make_tracking(**overrides) -> SlaTracking:
    data = {
        "id": "trk-1",
        "ticket_id": "INC-1",
        "sla_rule_id": "rule-1",
        "sla_start_time": T0,
        "min_target_time": T0 + timedelta(minutes=60),
        "avg_target_time": T0 + timedelta(minutes=240),
        "max_target_time": T0 + timedelta(minutes=480),
        "min_tat_minutes": 60,
        "avg_tat_minutes": 240,
        "max_tat_minutes": 480,
        "business_elapsed_minutes": 250,
        "sla_status": SlaStatus.WARNING,
        "ticket_context": make_context(is_vip=True, asset_categories=frozenset({"server"})),
        "version": 4,
        "created_at": T0,
        "updated_at": T0,
    }
    data.update(overrides)
    return SlaTracking(**data)


def session_returning(rowcount: int) -> MagicMock:
    session = MagicMock()
    session.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    return session


class TestTrackingMapping:

    @pytest.mark.unit
    def test_row_round_trip(self):
        tracking = make_tracking()
        model = SlaTrackingModel(
            id=tracking.id,
            ticket_id=tracking.ticket_id,
            sla_rule_id=tracking.sla_rule_id,
            sla_start_time=tracking.sla_start_time,
            min_target_time=tracking.min_target_time,
            avg_target_time=tracking.avg_target_time,
            max_target_time=tracking.max_target_time,
            min_tat_minutes=60,
            avg_tat_minutes=240,
            max_tat_minutes=480,
            version=tracking.version,
            created_at=tracking.created_at,
            **_tracking_values(tracking),
        )

        assert _tracking_to_domain(model) == tracking

    @pytest.mark.unit
    def test_values_are_plain_columns(self):
        values = _tracking_values(make_tracking())
        assert values["sla_status"] == "warning"
        assert values["ticket_context"]["asset_categories"] == ["server"]
        assert "version" not in values


class TestTrackingUpdate:

    @pytest.mark.unit
    async def test_update_bumps_version(self):
        session = session_returning(rowcount=1)
        repo = SQLAlchemySlaTrackingRepository(session)

        saved = await repo.update(make_tracking(), expected_version=4)

        assert saved.version == 5
        session.execute.assert_awaited_once()

    @pytest.mark.unit
    async def test_stale_version_conflicts(self):
        repo = SQLAlchemySlaTrackingRepository(session_returning(rowcount=0))

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await repo.update(make_tracking(), expected_version=4)

        assert exc_info.value.retryable
        assert exc_info.value.details["expected_version"] == 4

    @pytest.mark.unit
    async def test_driver_errors_wrapped(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("connection reset")))
        repo = SQLAlchemySlaTrackingRepository(session)

        with pytest.raises(PersistenceError) as exc_info:
            await repo.get_by_ticket("INC-1")
        assert exc_info.value.status_code == 503


class TestUnitOfWork:

    @pytest.mark.unit
    def test_bundle_shares_session(self):
        session = MagicMock()
        repos = repositories_for_session(session)
        assert repos.trackings._session is session
        assert repos.escalations._session is session


def session_maker_for(session) -> MagicMock:
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


class TestSessionContext:

    @pytest.mark.unit
    async def test_clean_exit_commits(self):
        session = MagicMock(commit=AsyncMock(), rollback=AsyncMock())
        with patch.object(database, "_session_maker", session_maker_for(session)):
            async with database.get_session_context() as opened:
                assert opened is session

        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()

    @pytest.mark.unit
    async def test_failure_rolls_back(self):
        session = MagicMock(commit=AsyncMock(), rollback=AsyncMock())
        with patch.object(database, "_session_maker", session_maker_for(session)):
            with pytest.raises(ConcurrentModificationError):
                async with database.get_session_context():
                    raise ConcurrentModificationError("SlaTracking", "trk-1", 4)

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.unit
    async def test_uninitialized_store_raises(self):
        with patch.object(database, "_session_maker", None):
            with pytest.raises(RuntimeError):
                async with database.get_session_context():
                    pass
