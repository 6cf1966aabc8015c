"""
Tests for PositionReconciler - local book vs exchange positions.
"""

from datetime import datetime, timezone

import pytest

from core.models import ExitReason, Position, RemotePosition, Side
from core.reconciler import PositionReconciler

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def local_position(symbol="BTC", side=Side.LONG, quantity=1.0, entry=100.0, current=None):
    pos = Position(symbol=symbol, side=side, quantity=quantity, entry_price=entry, entry_time=NOW)
    if current is not None:
        pos.refresh_price(current)
    return pos


def remote_position(symbol="BTC", side=Side.LONG, quantity=1.0, entry=100.0):
    return RemotePosition(symbol=symbol, side=side, quantity=quantity, entry_price=entry, leverage=5.0)


@pytest.fixture
def reconciler():
    return PositionReconciler({"reconciliation": {"abs_tolerance": 0.001, "rel_tolerance_pct": 1.0}})


class TestReconcile:
    def test_matching_books_need_no_corrections(self, reconciler):
        local = {"BTC": local_position()}
        result = reconciler.reconcile(local, {"BTC": remote_position()}, NOW)

        assert not result.has_corrections
        assert set(result.updated_positions) == {"BTC"}

    def test_missing_remote_emits_synthetic_close(self, reconciler):
        local = {"BTC": local_position(quantity=2.0, entry=100.0, current=110.0)}
        result = reconciler.reconcile(local, {}, NOW)

        assert "BTC" not in result.updated_positions
        assert len(result.synthetic_closes) == 1
        trade = result.synthetic_closes[0]
        assert trade.exit_reason == ExitReason.MANUAL_CLOSE_DETECTED.value
        assert trade.exit_price == pytest.approx(110.0)
        assert trade.pnl == pytest.approx(20.0)
        assert trade.exit_time == NOW

    def test_missing_remote_without_price_closes_at_entry(self, reconciler):
        result = reconciler.reconcile({"BTC": local_position()}, {}, NOW)

        assert result.synthetic_closes[0].exit_price == pytest.approx(100.0)
        assert result.synthetic_closes[0].pnl == pytest.approx(0.0)

    def test_dust_remote_counts_as_closed(self, reconciler):
        result = reconciler.reconcile(
            {"BTC": local_position()}, {"BTC": remote_position(quantity=0.00001)}, NOW
        )

        assert "BTC" not in result.updated_positions
        assert len(result.synthetic_closes) == 1

    def test_size_mismatch_adopts_remote_quantity(self, reconciler):
        result = reconciler.reconcile(
            {"BTC": local_position(quantity=1.0)}, {"BTC": remote_position(quantity=0.8)}, NOW
        )

        assert result.updated_positions["BTC"].quantity == pytest.approx(0.8)
        assert result.size_fixes[0].local_quantity == pytest.approx(1.0)
        assert result.size_fixes[0].remote_quantity == pytest.approx(0.8)

    def test_difference_within_tolerance_is_left_alone(self, reconciler):
        # 1% of 10 = 0.1 tolerance
        result = reconciler.reconcile(
            {"ETH": local_position("ETH", quantity=10.0)}, {"ETH": remote_position("ETH", quantity=10.05)}, NOW
        )

        assert not result.size_fixes
        assert result.updated_positions["ETH"].quantity == pytest.approx(10.0)

    def test_side_mismatch_closes_local_and_imports_remote(self, reconciler):
        result = reconciler.reconcile(
            {"BTC": local_position(side=Side.LONG)},
            {"BTC": remote_position(side=Side.SHORT, quantity=0.5, entry=105.0)},
            NOW,
        )

        assert len(result.divergences) == 1
        assert result.divergences[0].symbol == "BTC"
        assert len(result.synthetic_closes) == 1
        imported = result.updated_positions["BTC"]
        assert imported.side == Side.SHORT
        assert imported.quantity == pytest.approx(0.5)
        assert result.imported == ["BTC"]

    def test_untracked_remote_ignored_by_default(self, reconciler):
        result = reconciler.reconcile({}, {"SOL": remote_position("SOL")}, NOW)

        assert result.updated_positions == {}
        assert not result.has_corrections

    def test_untracked_remote_imported_when_enabled(self):
        reconciler = PositionReconciler({"reconciliation": {"import_manual_opens": True}})
        result = reconciler.reconcile({}, {"SOL": remote_position("SOL", entry=20.0)}, NOW)

        assert result.imported == ["SOL"]
        assert result.updated_positions["SOL"].leverage == 5.0

    def test_inputs_are_not_mutated(self, reconciler):
        local = {"BTC": local_position(quantity=1.0)}
        reconciler.reconcile(local, {"BTC": remote_position(quantity=0.5)}, NOW)

        assert local["BTC"].quantity == pytest.approx(1.0)

    def test_second_pass_is_a_noop(self, reconciler):
        local = {
            "BTC": local_position(quantity=1.0),
            "ETH": local_position("ETH", quantity=3.0),
            "SOL": local_position("SOL", side=Side.LONG),
        }
        remote = {
            "BTC": remote_position(quantity=0.7),
            "SOL": remote_position("SOL", side=Side.SHORT, entry=21.0),
        }
        first = reconciler.reconcile(local, remote, NOW)
        second = reconciler.reconcile(first.updated_positions, remote, NOW)

        assert first.has_corrections
        assert not second.has_corrections
        assert {s: p.quantity for s, p in second.updated_positions.items()} == {
            s: p.quantity for s, p in first.updated_positions.items()
        }

    def test_summary_lists_corrections(self, reconciler):
        result = reconciler.reconcile(
            {"BTC": local_position(), "ETH": local_position("ETH")},
            {"ETH": remote_position("ETH", quantity=2.0)},
            NOW,
        )
        summary = result.summary()

        assert summary["synthetic_closes"] == ["BTC"]
        assert summary["size_fixes"][0]["symbol"] == "ETH"

    def test_tolerance_has_absolute_floor(self, reconciler):
        assert reconciler.tolerance(0.01) == pytest.approx(0.001)
        assert reconciler.tolerance(50.0) == pytest.approx(0.5)
