"""
FIFO tests — allocation order, partial consumption, insufficient fuel,
excess liters, intake and tank-to-tank transfer.
"""

from decimal import Decimal

import pytest


def _legs(conn, **filters):
    import tank_repository as repo
    return repo.list_legs(conn, **filters)


def _three_lot_tank(conn, helpers):
    tank_id = helpers.create_tank(conn)
    l1 = helpers.add_lot(conn, tank_id, "MRN-L1", "100", received_at=1000.0)
    l2 = helpers.add_lot(conn, tank_id, "MRN-L2", "50", received_at=2000.0)
    l3 = helpers.add_lot(conn, tank_id, "MRN-L3", "200", received_at=3000.0)
    return tank_id, l1, l2, l3


# ── Allocation order ──────────────────────────────────────────────────────

class TestFifoAllocation:
    def test_oldest_lot_consumed_first(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id, l1, l2, l3 = _three_lot_tank(db_conn, helpers)
        result = allocate_fifo(db_conn, tank_id, "120")

        assert [leg.lot_id for leg in result.legs] == [l1, l2]
        assert [leg.kg for leg in result.legs] == [Decimal("100"), Decimal("20")]
        assert helpers.lot(db_conn, l1).remaining_kg == Decimal("0")
        assert helpers.lot(db_conn, l1).remaining_liters == Decimal("0")
        assert helpers.lot(db_conn, l2).remaining_kg == Decimal("30")
        assert helpers.lot(db_conn, l3).remaining_kg == Decimal("200")

    def test_legs_sum_to_requested(self, db_conn, helpers):
        from constants import CONSERVATION_EPSILON
        from fifo_service import allocate_fifo

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        result = allocate_fifo(db_conn, tank_id, "237.456")

        assert abs(sum(leg.kg for leg in result.legs) - Decimal("237.456")) <= CONSERVATION_EPSILON
        assert result.total_kg == Decimal("237.456")

    def test_tank_totals_decremented(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        allocate_fifo(db_conn, tank_id, "120")

        tank = helpers.tank(db_conn, tank_id)
        assert tank.current_kg == Decimal("230")
        assert tank.current_liters == Decimal("287.500")

    def test_legs_are_persisted_with_one_correlation_id(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        result = allocate_fifo(db_conn, tank_id, "120", transaction_type="drain")

        legs = _legs(db_conn, correlation_id=result.correlation_id)
        assert len(legs) == 2
        assert {leg["leg_type"] for leg in legs} == {"DRAIN"}
        assert sum(leg["kg"] for leg in legs) == Decimal("-120")

    def test_identical_timestamps_ordered_by_id(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(db_conn)
        first = helpers.add_lot(db_conn, tank_id, "SAME-1", "10", received_at=500.0)
        second = helpers.add_lot(db_conn, tank_id, "SAME-2", "10", received_at=500.0)

        result = allocate_fifo(db_conn, tank_id, "15")
        assert [leg.lot_id for leg in result.legs] == [first, second]
        assert result.legs[1].kg == Decimal("5")

    def test_allocate_in_liters(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id, l1, l2, _ = _three_lot_tank(db_conn, helpers)
        result = allocate_fifo(db_conn, tank_id, "150", unit="liters")

        assert [leg.liters for leg in result.legs] == [Decimal("125.000"), Decimal("25.000")]
        assert result.legs[1].kg == Decimal("20.000")
        assert helpers.lot(db_conn, l2).remaining_liters == Decimal("37.500")

    def test_depleted_lots_are_skipped(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id, l1, l2, _ = _three_lot_tank(db_conn, helpers)
        allocate_fifo(db_conn, tank_id, "100")
        result = allocate_fifo(db_conn, tank_id, "10")
        assert result.legs[0].lot_id == l2


# ── Failure modes ─────────────────────────────────────────────────────────

class TestAllocationFailures:
    def test_over_allocation_leaves_lots_unchanged(self, db_conn, helpers):
        from fifo_service import allocate_fifo
        from ledger_errors import InsufficientFuelError

        tank_id, l1, l2, l3 = _three_lot_tank(db_conn, helpers)
        with pytest.raises(InsufficientFuelError) as exc:
            allocate_fifo(db_conn, tank_id, "351")

        assert exc.value.requested == Decimal("351.000")
        assert exc.value.available == Decimal("350")
        assert exc.value.status_code == 400
        assert helpers.lot(db_conn, l1).remaining_kg == Decimal("100")
        assert helpers.lot(db_conn, l2).remaining_kg == Decimal("50")
        assert helpers.lot(db_conn, l3).remaining_kg == Decimal("200")
        assert helpers.tank(db_conn, tank_id).current_kg == Decimal("350")
        assert _legs(db_conn, tank_id=tank_id) == []

    def test_insufficient_detail_payload(self, db_conn, helpers):
        from fifo_service import allocate_fifo
        from ledger_errors import InsufficientFuelError

        tank_id = helpers.create_tank(db_conn)
        with pytest.raises(InsufficientFuelError) as exc:
            allocate_fifo(db_conn, tank_id, "1")
        detail = exc.value.to_detail()
        assert detail["requested"] == "1.000"
        assert detail["available"] == "0"
        assert detail["unit"] == "kg"

    @pytest.mark.parametrize("bad", ["0", "-5", "abc"])
    def test_invalid_quantity_rejected_before_lookup(self, db_conn, bad):
        from fifo_service import allocate_fifo
        from ledger_errors import ValidationError

        # Tank 999 does not exist: validation must fail first.
        with pytest.raises(ValidationError):
            allocate_fifo(db_conn, 999, bad)

    def test_unknown_tank(self, db_conn):
        from fifo_service import allocate_fifo
        from ledger_errors import NotFoundError

        with pytest.raises(NotFoundError):
            allocate_fifo(db_conn, 999, "10")

    def test_bad_unit_and_transaction_type(self, db_conn, helpers):
        from fifo_service import allocate_fifo
        from ledger_errors import ValidationError

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        with pytest.raises(ValidationError):
            allocate_fifo(db_conn, tank_id, "10", unit="gallons")
        with pytest.raises(ValidationError):
            allocate_fifo(db_conn, tank_id, "10", transaction_type="INTAKE")

    def test_unknown_leg_type_is_rejected(self, db_conn, helpers):
        from ledger_errors import ValidationError
        import tank_repository as repo

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        with pytest.raises(ValidationError, match="Unknown leg type"):
            repo.record_leg(db_conn, repo.FIXED, tank_id, "SPILL", Decimal("-1"), Decimal("-1.25"), "cid-1")
        assert _legs(db_conn, tank_id=tank_id) == []


# ── Operational density and excess ────────────────────────────────────────

class TestOperationalDensity:
    def test_lighter_density_leaves_excess_in_reserve_for_fixed_tank(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(db_conn)
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-X", "100")  # 125 L at 0.8

        result = allocate_fifo(db_conn, tank_id, "100", operational_density="0.85")

        assert result.legs[0].liters == Decimal("117.647")
        assert len(result.excess) == 1
        assert result.excess[0]["handled"] == "reserve"
        lot = helpers.lot(db_conn, lot_id)
        assert lot.remaining_kg == Decimal("0")
        assert lot.remaining_liters == Decimal("0")

        row = db_conn.execute("SELECT * FROM reserve_fuel WHERE source_lot_id = ?", (lot_id,)).fetchone()
        assert row["quantity_liters"] == "7.353"
        assert row["is_excess"] == 1
        assert row["source_mrn"] == "MRN-X"
        # reserve liters stay physically in the tank
        assert helpers.tank(db_conn, tank_id).current_liters == Decimal("7.353")

        legs = _legs(db_conn, correlation_id=result.correlation_id)
        assert [(leg["leg_type"], leg["kg"], leg["liters"]) for leg in legs] == [
            ("FUELING", Decimal("-100"), Decimal("-117.647")),
            ("EXCESS_TO_RESERVE", Decimal("0"), Decimal("-7.353")),
        ]
        assert result.excess[0]["leg_id"] == legs[1]["id"]

    def test_liters_request_leaving_volume_goes_to_reserve(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(db_conn)
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-V", "800")  # 1000 L at 0.8

        result = allocate_fifo(db_conn, tank_id, "950", unit="liters", operational_density="0.85")

        leg = result.legs[0]
        assert leg.kg == Decimal("800")
        assert leg.liters == Decimal("950")
        assert leg.lot_remaining_liters == Decimal("50.000")
        assert len(result.excess) == 1
        assert result.excess[0]["handled"] == "reserve"
        assert result.excess[0]["liters"] == pytest.approx(50.0)

        lot = helpers.lot(db_conn, lot_id)
        assert lot.remaining_kg == Decimal("0")
        assert lot.remaining_liters == Decimal("0")
        row = db_conn.execute("SELECT * FROM reserve_fuel WHERE source_lot_id = ?", (lot_id,)).fetchone()
        assert row["quantity_liters"] == "50.000"
        tank = helpers.tank(db_conn, tank_id)
        assert tank.current_kg == Decimal("0")
        assert tank.current_liters == Decimal("50.000")
        types = [leg["leg_type"] for leg in _legs(db_conn, correlation_id=result.correlation_id)]
        assert types == ["FUELING", "EXCESS_TO_RESERVE"]

    def test_liters_request_on_mobile_lot_flags_exchange(self, db_conn, helpers):
        from fifo_service import allocate_fifo
        from tank_repository import MOBILE

        tank_id = helpers.create_tank(db_conn, MOBILE, name="Bowser 2")
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-V", "800", kind=MOBILE)

        result = allocate_fifo(
            db_conn, tank_id, "950", kind=MOBILE, unit="liters", operational_density="0.85"
        )

        assert [e["handled"] for e in result.excess] == ["exchange_pending"]
        lot = helpers.lot(db_conn, lot_id, MOBILE)
        assert lot.remaining_kg == Decimal("0")
        assert lot.remaining_liters == Decimal("50.000")
        types = [leg["leg_type"] for leg in _legs(db_conn, correlation_id=result.correlation_id)]
        assert types == ["FUELING"]

    def test_lighter_density_leaves_excess_on_mobile_lot(self, db_conn, helpers):
        from fifo_service import allocate_fifo
        from tank_repository import MOBILE

        tank_id = helpers.create_tank(db_conn, MOBILE, name="Bowser 1")
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-M", "100", kind=MOBILE)

        result = allocate_fifo(db_conn, tank_id, "100", kind=MOBILE, operational_density="0.85")

        assert result.excess[0]["handled"] == "exchange_pending"
        assert result.excess[0]["liters"] == pytest.approx(7.353)
        lot = helpers.lot(db_conn, lot_id, MOBILE)
        assert lot.remaining_kg == Decimal("0")
        assert lot.remaining_liters == Decimal("7.353")

    def test_heavier_density_never_drives_liters_negative(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(db_conn)
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-H", "100")  # 125 L

        result = allocate_fifo(db_conn, tank_id, "100", operational_density="0.75")

        leg = result.legs[0]
        assert leg.liters == Decimal("125.000")
        assert leg.liter_variance == Decimal("-8.333")
        assert helpers.lot(db_conn, lot_id).remaining_liters == Decimal("0")
        assert result.excess == []

    def test_full_take_without_density_removes_all_liters(self, db_conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(db_conn)
        lot_id = helpers.add_lot(db_conn, tank_id, "MRN-D", "100", liters="126.2")

        result = allocate_fifo(db_conn, tank_id, "100")
        assert result.legs[0].liters == Decimal("126.2")
        assert result.legs[0].liter_variance == Decimal("1.200")
        assert helpers.lot(db_conn, lot_id).remaining_liters == Decimal("0")


# ── Intake ────────────────────────────────────────────────────────────────

class TestIntake:
    def test_intake_creates_lot_and_updates_tank(self, db_conn, helpers):
        from fifo_service import receive_intake

        tank_id = helpers.create_tank(db_conn)
        out = receive_intake(db_conn, tank_id, "24HR0001", "10000", density="0.8015")

        assert out["topped_up"] is False
        assert out["lot"]["quantity_kg"] == pytest.approx(8015.0)
        tank = helpers.tank(db_conn, tank_id)
        assert tank.current_liters == Decimal("10000.000")
        assert tank.current_kg == Decimal("8015.000")
        legs = _legs(db_conn, correlation_id=out["correlation_id"])
        assert [leg["leg_type"] for leg in legs] == ["INTAKE"]

    def test_density_derived_from_mass(self, db_conn, helpers):
        from fifo_service import receive_intake

        tank_id = helpers.create_tank(db_conn)
        out = receive_intake(db_conn, tank_id, "24HR0002", "1000", quantity_kg="803")
        assert out["lot"]["density_at_intake"] == pytest.approx(0.803)

    def test_repeated_mrn_tops_up_lot(self, db_conn, helpers):
        from fifo_service import receive_intake

        tank_id = helpers.create_tank(db_conn)
        first = receive_intake(db_conn, tank_id, "24HR0003", "1000", density="0.8")
        second = receive_intake(db_conn, tank_id, "24HR0003", "500", density="0.8")

        assert second["topped_up"] is True
        assert second["lot"]["id"] == first["lot"]["id"]
        assert second["lot"]["remaining_liters"] == pytest.approx(1500.0)
        assert second["lot"]["remaining_kg"] == pytest.approx(1200.0)

    def test_capacity_enforced(self, db_conn, helpers):
        from fifo_service import receive_intake
        from ledger_errors import ValidationError

        tank_id = helpers.create_tank(db_conn, capacity_liters="1000")
        with pytest.raises(ValidationError):
            receive_intake(db_conn, tank_id, "24HR0004", "1000.001", density="0.8")
        assert helpers.tank(db_conn, tank_id).current_liters == Decimal("0")
        assert db_conn.execute("SELECT COUNT(*) AS n FROM fixed_tank_lots").fetchone()["n"] == 0

    def test_density_or_mass_required(self, db_conn, helpers):
        from fifo_service import receive_intake
        from ledger_errors import ValidationError

        tank_id = helpers.create_tank(db_conn)
        with pytest.raises(ValidationError):
            receive_intake(db_conn, tank_id, "24HR0005", "100")
        with pytest.raises(ValidationError):
            receive_intake(db_conn, tank_id, "  ", "100", density="0.8")

    def test_inactive_tank_rejected(self, db_conn, helpers):
        from fifo_service import receive_intake
        from ledger_errors import ValidationError

        tank_id = helpers.create_tank(db_conn, status="inactive")
        with pytest.raises(ValidationError):
            receive_intake(db_conn, tank_id, "24HR0006", "100", density="0.8")


# ── Transfer ──────────────────────────────────────────────────────────────

class TestTransfer:
    def _setup(self, conn, helpers, dest_capacity="50000"):
        from tank_repository import MOBILE

        source = helpers.create_tank(conn, name="Fixed 1")
        a = helpers.add_lot(conn, source, "MRN-A", "100", received_at=1000.0)   # 125 L
        helpers.add_lot(conn, source, "MRN-B", "80", received_at=2000.0)        # 100 L
        dest = helpers.create_tank(conn, MOBILE, name="Bowser 7", capacity_liters=dest_capacity)
        return source, dest, a

    def test_transfer_recreates_lots_in_destination(self, db_conn, helpers):
        from fifo_service import transfer_fuel
        import tank_repository as repo

        source, dest, a = self._setup(db_conn, helpers)
        out = transfer_fuel(db_conn, source, dest, "150")

        dest_lots = repo.list_active_lots(db_conn, repo.MOBILE, dest)
        assert [(lot.mrn, lot.remaining_liters, lot.remaining_kg) for lot in dest_lots] == [
            ("MRN-A", Decimal("125.000"), Decimal("100")),
            ("MRN-B", Decimal("25.000"), Decimal("20.000")),
        ]
        assert dest_lots[0].received_at == 1000.0

        src_tank = helpers.tank(db_conn, source)
        assert src_tank.current_liters == Decimal("75.000")
        assert src_tank.current_kg == Decimal("60.000")
        dest_tank = helpers.tank(db_conn, dest, repo.MOBILE)
        assert dest_tank.current_liters == Decimal("150.000")
        assert dest_tank.current_kg == Decimal("120.000")

        legs = _legs(db_conn, correlation_id=out["correlation_id"])
        assert sorted(leg["leg_type"] for leg in legs) == ["TRANSFER_IN", "TRANSFER_IN", "TRANSFER_OUT", "TRANSFER_OUT"]

    def test_transfer_over_capacity_changes_nothing(self, db_conn, helpers):
        from fifo_service import transfer_fuel
        from ledger_errors import ValidationError

        source, dest, a = self._setup(db_conn, helpers, dest_capacity="100")
        with pytest.raises(ValidationError):
            transfer_fuel(db_conn, source, dest, "150")
        assert helpers.lot(db_conn, a).remaining_kg == Decimal("100")
        assert helpers.tank(db_conn, source).current_kg == Decimal("180")

    def test_transfer_more_than_available(self, db_conn, helpers):
        from fifo_service import transfer_fuel
        from ledger_errors import InsufficientFuelError

        source, dest, a = self._setup(db_conn, helpers)
        with pytest.raises(InsufficientFuelError):
            transfer_fuel(db_conn, source, dest, "226")
        assert helpers.lot(db_conn, a).remaining_liters == Decimal("125.000")


# ── Drain reversal ────────────────────────────────────────────────────────

class TestDrainReversal:
    def _drained(self, conn, helpers):
        from fifo_service import allocate_fifo

        tank_id = helpers.create_tank(conn, name="Fixed 9")
        l1 = helpers.add_lot(conn, tank_id, "MRN-L1", "100", received_at=1000.0)   # 125 L
        l2 = helpers.add_lot(conn, tank_id, "MRN-L2", "50", received_at=2000.0)    # 62.5 L
        drain = allocate_fifo(conn, tank_id, "150", unit="liters", transaction_type="DRAIN")
        return tank_id, l1, l2, drain.correlation_id

    def test_partial_return_is_split_over_drained_lots(self, db_conn, helpers):
        from fifo_service import reverse_drain

        tank_id, l1, l2, drain_cid = self._drained(db_conn, helpers)
        out = reverse_drain(db_conn, drain_cid, "60")

        assert out["total_kg"] == pytest.approx(48.0)
        assert [(p["mrn"], p["liters"], p["kg"]) for p in out["portions"]] == [
            ("MRN-L1", 50.0, 40.0),
            ("MRN-L2", 10.0, 8.0),
        ]
        assert out["remaining_reversible_liters"] == pytest.approx(90.0)
        assert helpers.lot(db_conn, l1).remaining_liters == Decimal("50.000")
        assert helpers.lot(db_conn, l1).remaining_kg == Decimal("40.000")
        assert helpers.lot(db_conn, l2).remaining_kg == Decimal("38.000")
        tank = helpers.tank(db_conn, tank_id)
        assert tank.current_liters == Decimal("97.500")
        assert tank.current_kg == Decimal("78.000")

        legs = _legs(db_conn, correlation_id=out["correlation_id"])
        assert [(leg["leg_type"], leg["liters"]) for leg in legs] == [
            ("DRAIN_REVERSAL", Decimal("50")),
            ("DRAIN_REVERSAL", Decimal("10")),
        ]

    def test_cannot_return_more_than_was_drained(self, db_conn, helpers):
        from fifo_service import reverse_drain
        from ledger_errors import ValidationError

        tank_id, l1, l2, drain_cid = self._drained(db_conn, helpers)
        reverse_drain(db_conn, drain_cid, "60")
        with pytest.raises(ValidationError, match="only 90"):
            reverse_drain(db_conn, drain_cid, "91")
        assert helpers.tank(db_conn, tank_id).current_liters == Decimal("97.500")

        last = reverse_drain(db_conn, drain_cid, "90")
        assert last["remaining_reversible_liters"] == 0
        assert helpers.tank(db_conn, tank_id).current_kg == Decimal("150.000")

    def test_return_to_another_tank_keeps_mrn_and_age(self, db_conn, helpers):
        from fifo_service import reverse_drain
        import tank_repository as repo

        tank_id, l1, l2, drain_cid = self._drained(db_conn, helpers)
        bowser = helpers.create_tank(db_conn, repo.MOBILE, name="Bowser 4")

        reverse_drain(db_conn, drain_cid, "150", dest_kind=repo.MOBILE, dest_tank_id=bowser)

        lots = repo.list_active_lots(db_conn, repo.MOBILE, bowser)
        assert [(lot.mrn, lot.received_at, lot.remaining_liters) for lot in lots] == [
            ("MRN-L1", 1000.0, Decimal("125.000")),
            ("MRN-L2", 2000.0, Decimal("25.000")),
        ]
        assert helpers.tank(db_conn, bowser, repo.MOBILE).current_kg == Decimal("120.000")
        assert helpers.lot(db_conn, l1).remaining_kg == Decimal("0")

    def test_capacity_is_enforced(self, db_conn, helpers):
        from fifo_service import reverse_drain
        from ledger_errors import ValidationError
        import tank_repository as repo

        tank_id, l1, l2, drain_cid = self._drained(db_conn, helpers)
        bowser = helpers.create_tank(db_conn, repo.MOBILE, name="Tiny", capacity_liters="10")

        with pytest.raises(ValidationError, match="capacity"):
            reverse_drain(db_conn, drain_cid, "20", dest_kind=repo.MOBILE, dest_tank_id=bowser)
        assert repo.list_lots(db_conn, repo.MOBILE, bowser) == []
        assert db_conn.execute("SELECT COUNT(*) FROM drain_reversals").fetchone()[0] == 0

    def test_unknown_or_non_drain_correlation(self, db_conn, helpers):
        from fifo_service import allocate_fifo, reverse_drain
        from ledger_errors import NotFoundError

        with pytest.raises(NotFoundError):
            reverse_drain(db_conn, "no-such-drain", "1")

        tank_id, *_ = _three_lot_tank(db_conn, helpers)
        fueling = allocate_fifo(db_conn, tank_id, "10")
        with pytest.raises(NotFoundError):
            reverse_drain(db_conn, fueling.correlation_id, "1")
