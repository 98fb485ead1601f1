"""Tests for the single-flight guard and configuration selection."""

import pytest

from recon_sdk.errors import AlreadyInProgressError, InvalidRequestError
from recon_sdk.reconciliation import (
    RECONCILIATION_CONFIGS,
    Schedule,
    SingleFlightGuard,
    configs_for_schedule,
    select_configs,
)


class TestSingleFlightGuard:
    """Tests for SingleFlightGuard."""

    def test_acquire_twice_conflicts(self):
        """A second run of the same scope is rejected."""
        guard = SingleFlightGuard()
        guard.acquire("transfer_status_reconciliation")

        with pytest.raises(AlreadyInProgressError) as exc_info:
            guard.acquire("transfer_status_reconciliation")
        assert exc_info.value.scope == "transfer_status_reconciliation"
        assert str(exc_info.value) == "Reconciliation already in progress"

    def test_release_allows_new_run(self):
        guard = SingleFlightGuard()
        guard.acquire("all")
        guard.release("all")

        guard.acquire("all")
        assert guard.is_active("all")

    def test_all_overlaps_single_config(self):
        """A full run and a single-config run never execute together."""
        guard = SingleFlightGuard()
        guard.acquire("all")

        with pytest.raises(AlreadyInProgressError):
            guard.acquire("customer_state_reconciliation")

        guard.release("all")
        guard.acquire("customer_state_reconciliation")
        with pytest.raises(AlreadyInProgressError):
            guard.acquire("all")

    def test_distinct_configs_do_not_conflict(self):
        guard = SingleFlightGuard()
        guard.acquire("transfer_status_reconciliation")
        guard.acquire("customer_state_reconciliation")

        assert guard.is_active("transfer_status_reconciliation")
        assert guard.is_active("customer_state_reconciliation")

    def test_qualified_scopes_only_conflict_with_themselves(self):
        """Premium scopes are independent of webhook runs and other periods."""
        guard = SingleFlightGuard()
        guard.acquire("all")
        guard.acquire("premium_reconciliation:2025-01")
        guard.acquire("premium_reconciliation:2025-02")

        with pytest.raises(AlreadyInProgressError):
            guard.acquire("premium_reconciliation:2025-01")

    def test_force_bypasses_conflict(self):
        """Forced runs start anyway and each release clears one hold."""
        guard = SingleFlightGuard()
        guard.acquire("all")
        guard.acquire("all", force=True)

        guard.release("all")
        assert guard.is_active("all")
        guard.release("all")
        assert not guard.is_active("all")

    def test_hold_releases_on_error(self):
        guard = SingleFlightGuard()

        with pytest.raises(RuntimeError):
            with guard.hold("all"):
                assert guard.is_active("all")
                raise RuntimeError("boom")

        assert not guard.is_active("all")


class TestConfigSelection:
    """Tests for config name resolution."""

    def test_none_selects_every_config(self):
        assert select_configs(None) == RECONCILIATION_CONFIGS
        assert select_configs([]) == RECONCILIATION_CONFIGS

    def test_all_selects_every_config(self):
        assert select_configs(["all"]) == RECONCILIATION_CONFIGS

    def test_select_by_name(self):
        configs = select_configs(["customer_state_reconciliation"])

        assert [config.name for config in configs] == ["customer_state_reconciliation"]
        assert configs[0].resource_type == "customer"

    def test_unknown_name_rejected(self):
        with pytest.raises(InvalidRequestError, match="no_such_config"):
            select_configs(["no_such_config"])

    def test_configs_for_schedule(self):
        hourly = configs_for_schedule(Schedule.HOURLY)
        daily = configs_for_schedule(Schedule.DAILY)

        assert [config.name for config in hourly] == ["transfer_status_reconciliation"]
        assert [config.name for config in daily] == ["customer_state_reconciliation"]
