"""Tests for execution.ledger: weighted-average fills, single active exposure, close-once."""

import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from execution.ledger import LedgerError, PositionLedger
from execution.models import PositionStatus


class TestWeightedAverage:
    @pytest.mark.parametrize(
        "fills,expected_qty,expected_avg",
        [
            ([(10, "100"), (10, "110")], 20, Decimal("105")),
            ([(3, "100.25"), (1, "101.5")], 4, Decimal("100.5625")),
            ([(7, "99.1"), (3, "100")], 10, Decimal("99.37")),
            ([(1, "50"), (1, "60"), (2, "70")], 4, Decimal("62.5")),
            ([(-5, "200"), (-5, "190")], -10, Decimal("195")),
        ],
    )
    def test_average_grid(self, ledger: PositionLedger, fills, expected_qty, expected_avg):
        for i, (qty, price) in enumerate(fills):
            side = "BUY" if qty > 0 else "SELL"
            position = ledger.record_fill("NSE_FNO", "43210", side, qty, price, f"o{i}")
        assert position.quantity == expected_qty
        assert position.avg_price == expected_avg
        assert position.entry_price == expected_avg

    def test_partial_reduction_keeps_average(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 10, "100", "o1")
        position = ledger.record_fill("NSE", "1", "SELL", -4, "100", "o2")
        assert position.quantity == 6
        assert position.avg_price == Decimal("100")

    def test_prices_round_trip_without_float_noise(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 3, 0.1, "o1")
        position = ledger.get_active("NSE", "1")
        assert position.entry_price == Decimal("0.1")


class TestSingleActiveExposure:
    def test_repeated_fills_one_active_row(self, ledger: PositionLedger):
        for i in range(5):
            ledger.record_fill("NSE", "1333", "BUY", 1, 100 + i, f"o{i}")
        assert ledger.count_active() == 1
        assert ledger.fill_count("NSE", "1333") == 5
        assert ledger.get_active("NSE_EQ", 1333).quantity == 5

    def test_segment_aliases_share_a_key(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1333", "BUY", 1, "100", "o1")
        ledger.record_fill("NSE_EQ", 1333, "BUY", 1, "102", "o2")
        assert ledger.count_active() == 1

    def test_concurrent_fills_serialize(self, ledger: PositionLedger):
        barrier = threading.Barrier(8)
        errors: list[Exception] = []

        def worker(i: int):
            barrier.wait()
            try:
                ledger.record_fill("NSE_FNO", "777", "BUY", 1, 100 + i, f"o{i}")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert ledger.count_active() == 1
        assert ledger.get_active("NSE_FNO", "777").quantity == 8
        assert ledger.fill_count("NSE_FNO", "777") == 8

    def test_reopen_after_close_is_a_new_position(self, ledger: PositionLedger):
        first = ledger.record_fill("NSE", "1", "BUY", 1, "100", "o1")
        ledger.close("NSE", "1", "101")
        second = ledger.record_fill("NSE", "1", "BUY", 1, "99", "o2")
        assert second.id != first.id
        assert second.entry_price == Decimal("99")


class TestInvalidFills:
    def test_fill_that_flattens_is_rejected(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 10, "100", "o1")
        with pytest.raises(LedgerError, match="flatten"):
            ledger.record_fill("NSE", "1", "SELL", -10, "101", "o2")
        assert ledger.get_active("NSE", "1").quantity == 10
        assert ledger.fill_count("NSE", "1") == 1

    def test_zero_quantity_rejected(self, ledger: PositionLedger):
        with pytest.raises(LedgerError, match="non-zero"):
            ledger.record_fill("NSE", "1", "BUY", 0, "100", "o1")

    @pytest.mark.parametrize("price", ["0", "-1"])
    def test_non_positive_price_rejected(self, ledger: PositionLedger, price: str):
        with pytest.raises(LedgerError, match="positive"):
            ledger.record_fill("NSE", "1", "BUY", 1, price, "o1")


class TestApplyFill:
    def test_offsetting_fill_closes_at_fill_price(self, ledger: PositionLedger):
        ledger.apply_fill("NSE", "1", "BUY", 4, "100", "o1")
        closed = ledger.apply_fill("NSE", "1", "SELL", -4, "103", "o2")
        assert closed.status is PositionStatus.CLOSED
        assert closed.realized_pnl == Decimal("12")
        assert ledger.get_active("NSE", "1") is None
        assert ledger.has_order("o2") is True

    def test_other_fills_average_or_open(self, ledger: PositionLedger):
        opened = ledger.apply_fill("NSE", "1", "BUY", 4, "100", "o1")
        reduced = ledger.apply_fill("NSE", "1", "SELL", -1, "110", "o2")
        assert opened.is_active and reduced.is_active
        assert reduced.quantity == 3
        assert ledger.fill_count("NSE", "1") == 2

    def test_concurrent_offsets_close_once(self, ledger: PositionLedger):
        ledger.apply_fill("NSE", "1", "BUY", 5, "100", "o0")
        results = []
        barrier = threading.Barrier(4)

        def worker(n: int):
            barrier.wait()
            results.append(ledger.apply_fill("NSE", "1", "SELL", -5, "101", f"s{n}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        statuses = sorted(p.status.value for p in results)
        assert statuses.count("closed") == 1
        assert len(ledger.list_positions(status=PositionStatus.CLOSED)) == 1

    def test_has_order_unknown(self, ledger: PositionLedger):
        assert ledger.has_order("nope") is False


class TestClose:
    def test_long_pnl(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 10, "100", "o1")
        closed = ledger.close("NSE", "1", "104.5")
        assert closed.status is PositionStatus.CLOSED
        assert closed.realized_pnl == Decimal("45")
        assert closed.realized_pnl_pct == Decimal("4.5")
        assert closed.exit_price == Decimal("104.5")

    def test_short_pnl(self, ledger: PositionLedger):
        ledger.record_fill("NSE_FNO", "9", "SELL", -50, "200", "o1")
        closed = ledger.close("NSE_FNO", "9", "190")
        assert closed.realized_pnl == Decimal("500")
        assert closed.realized_pnl_pct == Decimal("5")

    def test_close_happens_once(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 1, "100", "o1")
        assert ledger.close("NSE", "1", "101") is not None
        assert ledger.close("NSE", "1", "102") is None
        closed = ledger.list_positions(status=PositionStatus.CLOSED)
        assert len(closed) == 1
        assert closed[0].exit_price == Decimal("101")

    def test_close_without_position(self, ledger: PositionLedger):
        assert ledger.close("NSE", "404", "100") is None

    def test_close_rejects_bad_price(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 1, "100", "o1")
        with pytest.raises(LedgerError):
            ledger.close("NSE", "1", "0")
        assert ledger.get_active("NSE", "1") is not None


class TestQueries:
    def test_realized_pnl_for_day(self, ledger: PositionLedger):
        day = date(2026, 3, 2)
        ledger.record_fill("NSE", "1", "BUY", 10, "100", "o1")
        ledger.close("NSE", "1", "90", exited_at=datetime(2026, 3, 2, 5, 0, tzinfo=timezone.utc))
        ledger.record_fill("NSE", "2", "BUY", 1, "100", "o2")
        ledger.close("NSE", "2", "130", exited_at=datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))
        ledger.record_fill("NSE", "3", "BUY", 1, "100", "o3")
        ledger.close("NSE", "3", "50", exited_at=datetime(2026, 3, 3, 4, 0, tzinfo=timezone.utc))
        assert ledger.realized_pnl_for(day) == Decimal("-70")
        assert ledger.realized_pnl_for(date(2026, 3, 1)) == Decimal(0)

    def test_list_and_counts(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 1, "100", "o1")
        ledger.record_fill("NSE", "2", "BUY", 1, "100", "o2")
        ledger.close("NSE", "1", "101")
        assert ledger.count_active() == 1
        assert [p.security_id for p in ledger.list_active()] == ["2"]
        assert [p.security_id for p in ledger.list_positions()] == ["2", "1"]
        assert len(ledger.list_positions(limit=1)) == 1

    def test_meta_is_merged_across_fills(self, ledger: PositionLedger):
        ledger.record_fill("NSE", "1", "BUY", 1, "100", "o1", meta={"run_id": "a"})
        position = ledger.record_fill("NSE", "1", "BUY", 1, "100", "o2", meta={"tool": "orders.place"})
        assert position.meta == {"run_id": "a", "tool": "orders.place"}

    def test_state_survives_reopen(self, tmp_path: Path):
        path = tmp_path / "ledger.db"
        PositionLedger(path).record_fill("NSE", "1", "BUY", 2, "100", "o1")
        reopened = PositionLedger(path)
        position = reopened.get_active("NSE", "1")
        assert position.quantity == 2
        assert position.to_dict()["status"] == "active"
