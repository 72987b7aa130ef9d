import pytest
from pydantic import ValidationError

from app.shared.core.config import LOCKED_GATEWAY_CALLS, Settings


def _settings(**overrides) -> Settings:
    values = dict(TESTING=True, DATABASE_URL="sqlite+aiosqlite:///:memory:")
    values.update(overrides)
    return Settings(**values)


def test_defaults_cover_the_longest_locked_operation():
    settings = _settings()

    longest = LOCKED_GATEWAY_CALLS * settings.GATEWAY_TIMEOUT_SECONDS + settings.LOCK_DB_MARGIN_SECONDS
    assert settings.longest_locked_operation_seconds == longest
    assert longest < settings.LOCK_ORPHAN_AFTER_SECONDS < settings.LOCK_TTL_SECONDS


def test_lease_shorter_than_two_gateway_calls_is_rejected():
    # One 30s call fits in 60s, a receipt lookup plus an order create does not
    with pytest.raises(ValidationError, match="LOCK_TTL_SECONDS"):
        _settings(GATEWAY_TIMEOUT_SECONDS=30.0, LOCK_TTL_SECONDS=60, LOCK_ORPHAN_AFTER_SECONDS=45)


def test_orphan_scan_inside_the_locked_operation_is_rejected():
    with pytest.raises(ValidationError, match="LOCK_ORPHAN_AFTER_SECONDS"):
        _settings(LOCK_ORPHAN_AFTER_SECONDS=45)


def test_orphan_threshold_must_stay_below_the_lease():
    with pytest.raises(ValidationError, match="LOCK_ORPHAN_AFTER_SECONDS"):
        _settings(LOCK_ORPHAN_AFTER_SECONDS=60)


def test_unknown_fee_basis_is_rejected():
    with pytest.raises(ValidationError, match="FEE_BASIS"):
        _settings(FEE_BASIS="gross")
