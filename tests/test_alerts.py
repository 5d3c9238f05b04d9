"""
Tests for Inventory Alerts
Alert generation, deduplication, auto-resolution and lifecycle
"""

import pytest

from conftest import NOW, utc
from pharmapos.core.exceptions import InvalidStateTransition
from pharmapos.services.inventory.alerts import (
    AlertSeverity, AlertStatus, AlertType, scan_ledger_alerts
)


def by_type(alerts):
    return {(alert.alert_type, alert.batch_number): alert for alert in alerts}


class TestAlertScan:
    """Test suite for scan_ledger_alerts"""

    def test_expiry_bands(self, ledger):
        """Batch A is about 31 days from expiry and batch B about 62"""
        created, resolved = scan_ledger_alerts(ledger, now=NOW)

        alerts = by_type(created)
        assert set(alerts) == {
            (AlertType.EXPIRING_SOON_60_DAYS, "A"),
            (AlertType.EXPIRING_SOON_90_DAYS, "B"),
        }
        assert alerts[(AlertType.EXPIRING_SOON_60_DAYS, "A")].severity == AlertSeverity.WARNING
        assert alerts[(AlertType.EXPIRING_SOON_90_DAYS, "B")].severity == AlertSeverity.INFO
        assert resolved == []

    def test_critical_and_expired_bands(self, ledger):
        created, _ = scan_ledger_alerts(ledger, now=utc(2024, 1, 10))

        alerts = by_type(created)
        assert alerts[(AlertType.EXPIRED, "A")].severity == AlertSeverity.CRITICAL
        assert alerts[(AlertType.EXPIRING_SOON_30_DAYS, "B")].severity == AlertSeverity.CRITICAL
        assert "has expired" in alerts[(AlertType.EXPIRED, "A")].message

    def test_low_stock(self, ledger):
        ledger.quarantine("A", 5, now=NOW)

        created, _ = scan_ledger_alerts(ledger, now=NOW)

        low = by_type(created)[(AlertType.LOW_STOCK, None)]
        assert low.severity == AlertSeverity.WARNING
        assert low.current_quantity == 5
        assert low.threshold_quantity == 5

    def test_out_of_stock(self, ledger):
        ledger.commit(ledger.allocate(10, now=NOW), now=NOW)

        created, _ = scan_ledger_alerts(ledger, now=NOW)

        assert [alert.alert_type for alert in created] == [AlertType.OUT_OF_STOCK]
        assert created[0].severity == AlertSeverity.CRITICAL

    def test_recalled_batches_raise_no_expiry_alert(self, ledger):
        ledger.recall_batch("A", reason="Recall", now=NOW)

        created, _ = scan_ledger_alerts(ledger, now=NOW)

        assert (AlertType.EXPIRING_SOON_60_DAYS, "A") not in by_type(created)

    def test_open_alerts_are_not_duplicated(self, ledger):
        ledger.quarantine("A", 5, now=NOW)
        first, _ = scan_ledger_alerts(ledger, now=NOW)
        first[0].acknowledge("pharmacist", at=NOW)

        second, resolved = scan_ledger_alerts(ledger, existing=first, now=NOW)

        assert second == []
        assert resolved == []

    def test_closed_alerts_do_not_block_new_ones(self, ledger):
        ledger.quarantine("A", 5, now=NOW)
        first, _ = scan_ledger_alerts(ledger, now=NOW)
        for alert in first:
            alert.dismiss("pharmacist", reason="Known", at=NOW)

        second, _ = scan_ledger_alerts(ledger, existing=first, now=NOW)

        assert {alert.alert_type for alert in second} == {alert.alert_type for alert in first}

    def test_low_stock_auto_resolves(self, ledger):
        ledger.quarantine("A", 5, now=NOW)
        created, _ = scan_ledger_alerts(ledger, now=NOW)
        ledger.unquarantine("A", 5, now=NOW)

        _, resolved = scan_ledger_alerts(ledger, existing=created, now=NOW)

        low = by_type(created)[(AlertType.LOW_STOCK, None)]
        assert low in resolved
        assert low.status == AlertStatus.RESOLVED
        assert low.resolved_by == "System"
        assert low.resolution_notes == "Stock level restored above reorder point"

    def test_out_of_stock_auto_resolves_on_restock(self, ledger, batch_factory):
        ledger.commit(ledger.allocate(10, now=NOW), now=NOW)
        created, _ = scan_ledger_alerts(ledger, now=NOW)
        ledger.restock(batch_factory("R", 2, utc(2025, 1, 1)), now=NOW)

        new, resolved = scan_ledger_alerts(ledger, existing=created, now=NOW)

        assert [alert.alert_type for alert in resolved] == [AlertType.OUT_OF_STOCK]
        assert [alert.alert_type for alert in new] == [AlertType.LOW_STOCK]

    def test_batch_alert_resolves_when_depleted(self, ledger):
        created, _ = scan_ledger_alerts(ledger, now=NOW)
        ledger.commit(ledger.allocate(5, now=NOW), now=NOW)

        _, resolved = scan_ledger_alerts(ledger, existing=created, now=NOW)

        assert [(alert.alert_type, alert.batch_number) for alert in resolved] == [
            (AlertType.EXPIRING_SOON_60_DAYS, "A")
        ]

    def test_alerts_of_other_ledgers_are_ignored(self, ledger, second_ledger):
        ledger.quarantine("A", 5, now=NOW)
        created, _ = scan_ledger_alerts(ledger, now=NOW)

        _, resolved = scan_ledger_alerts(second_ledger, existing=created, now=NOW)

        assert resolved == []
        assert all(alert.is_open for alert in created)


class TestAlertLifecycle:
    """Test suite for alert status transitions"""

    @pytest.fixture
    def alert(self, ledger):
        created, _ = scan_ledger_alerts(ledger, now=NOW)
        return created[0]

    def test_acknowledge_then_resolve(self, alert):
        alert.acknowledge("pharmacist", at=NOW)
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.is_open

        alert.resolve("pharmacist", notes="Moved to front shelf", at=NOW)

        assert alert.status == AlertStatus.RESOLVED
        assert not alert.is_open
        assert alert.resolved_at == NOW

    def test_acknowledge_twice(self, alert):
        alert.acknowledge("pharmacist", at=NOW)

        with pytest.raises(InvalidStateTransition):
            alert.acknowledge("pharmacist", at=NOW)

    def test_closed_alert_cannot_change(self, alert):
        alert.dismiss("pharmacist", reason="Duplicate", at=NOW)

        with pytest.raises(InvalidStateTransition):
            alert.resolve("pharmacist", at=NOW)
        with pytest.raises(InvalidStateTransition):
            alert.dismiss("pharmacist", at=NOW)
