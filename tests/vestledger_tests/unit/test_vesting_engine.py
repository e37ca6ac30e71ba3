"""
Unit tests for VestingEngine.

Covers schedule creation, releases around the cliff, category caps,
revocation, the pause gate, the global start and emergency withdrawals.
"""

import logging

import pytest

from vestledger.core.access_control import Capability
from vestledger.core.categories import VestingCategory
from vestledger.core.schedules import UNSET_START
from vestledger.core.vesting_engine import VestingEngine
from vestledger.core.vesting_exceptions import (
    AllocationExceededError,
    AlreadyStartedError,
    DuplicateBeneficiaryError,
    InsufficientCustodyError,
    InvalidReasonError,
    PausedError,
    ScheduleNotFoundError,
    TransferFailedError,
    UnauthorizedError,
    ValidationError,
)
from vesting_helpers import (
    ADMIN,
    ALICE,
    BOB,
    CUSTODY,
    DAY,
    DEPLOY_TIME,
    MALLORY,
    MANAGER,
    PAUSER,
    UNIT,
    T,
    FailingLedger,
    make_capabilities,
    make_engine,
    make_token,
)

TOTAL = 12_000 * UNIT
CLIFF = 30 * DAY
DURATION = 365 * DAY


def add_alice(engine, start=None, amount=TOTAL, category=VestingCategory.CORE_TEAM):
    return engine.add_vesting(
        MANAGER, ALICE, amount, start, CLIFF, DURATION, category, now=DEPLOY_TIME
    )


class TestConstruction:
    def test_requires_future_global_start(self, token, capabilities):
        with pytest.raises(ValidationError, match="Start time must be in future"):
            VestingEngine(token, CUSTODY, capabilities, DEPLOY_TIME, now=DEPLOY_TIME)

    def test_rejects_missing_token(self, capabilities):
        with pytest.raises(ValidationError, match="Invalid token address"):
            VestingEngine(None, CUSTODY, capabilities, T, now=DEPLOY_TIME)

    def test_rejects_zero_custody_address(self, token, capabilities):
        with pytest.raises(ValidationError, match="Invalid address"):
            VestingEngine(token, "0x" + "0" * 40, capabilities, T, now=DEPLOY_TIME)

    def test_deploy_grants_every_capability_to_admin(self, token):
        engine = VestingEngine.deploy(token, CUSTODY, ADMIN, T, now=DEPLOY_TIME)
        for capability in Capability:
            assert engine.capabilities.has_capability(ADMIN, capability)
        assert not engine.capabilities.has_capability(MALLORY, Capability.ADMIN)

    def test_default_caps_cover_launch_supply(self, engine):
        stats = engine.get_all_category_stats()
        assert stats["CORE_TEAM"]["max_allocation"] == 200_000 * UNIT
        assert stats["ECOSYSTEM_FUND"]["max_allocation"] == 250_000 * UNIT
        assert sum(s["max_allocation"] for s in stats.values()) == 1_000_000 * UNIT


class TestAddVesting:
    def test_creates_schedule_and_commits_allocation(self, engine):
        returned = add_alice(engine, start=T)
        schedule = engine.get_vesting(ALICE)

        assert schedule == returned
        assert schedule.beneficiary == ALICE
        assert schedule.total_amount == TOTAL
        assert schedule.start == T
        assert schedule.cliff_duration == 30 * DAY
        assert schedule.total_duration == 365 * DAY
        assert schedule.category is VestingCategory.CORE_TEAM
        assert schedule.released_amount == 0
        assert not schedule.revoked
        assert engine.get_category_stats(VestingCategory.CORE_TEAM)["allocated"] == TOTAL
        assert engine.get_contract_stats()["total_allocated"] == TOTAL
        assert engine.events[-1].event_type == "VestingAdded"

    def test_unset_start_follows_global_start(self, engine):
        add_alice(engine)
        assert engine.get_vesting(ALICE).start == UNSET_START
        assert engine.effective_start(ALICE) == T

    def test_requires_schedule_manager(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.add_vesting(MALLORY, ALICE, TOTAL, None, CLIFF, DURATION, "core_team", now=DEPLOY_TIME)
        assert ALICE not in engine.schedules

    def test_duplicate_beneficiary_rejected(self, engine):
        add_alice(engine)
        with pytest.raises(DuplicateBeneficiaryError, match="Vesting already exists"):
            add_alice(engine)
        assert engine.get_category_stats("core_team")["allocated"] == TOTAL

    def test_duplicate_is_case_insensitive(self, engine):
        add_alice(engine)
        with pytest.raises(DuplicateBeneficiaryError):
            engine.add_vesting(MANAGER, ALICE.upper(), UNIT, None, 0, DAY, "core_team", now=DEPLOY_TIME)

    @pytest.mark.parametrize(
        "amount, cliff, duration, message",
        [
            (0, 0, DAY, "Amount must be greater than zero"),
            (UNIT, 0, 0, "Duration must be greater than zero"),
            (UNIT, 2 * DAY, DAY, "Cliff cannot exceed duration"),
        ],
    )
    def test_invalid_parameters(self, engine, amount, cliff, duration, message):
        with pytest.raises(ValidationError, match=message):
            engine.add_vesting(MANAGER, ALICE, amount, None, cliff, duration, "core_team", now=DEPLOY_TIME)
        assert len(engine.schedules) == 0

    def test_cliff_equal_to_duration_allowed(self, engine):
        schedule = engine.add_vesting(MANAGER, ALICE, UNIT, None, DAY, DAY, "core_team", now=DEPLOY_TIME)
        assert schedule.cliff_duration == schedule.total_duration

    def test_category_cap_enforced(self, engine):
        with pytest.raises(AllocationExceededError, match="Exceeds category allocation limit") as excinfo:
            engine.add_vesting(
                MANAGER, ALICE, 250_001 * UNIT, None, 0, DURATION, VestingCategory.ECOSYSTEM_FUND, now=DEPLOY_TIME
            )
        assert excinfo.value.category == "ECOSYSTEM_FUND"
        assert engine.get_category_stats(VestingCategory.ECOSYSTEM_FUND)["allocated"] == 0
        assert ALICE not in engine.schedules

    def test_category_can_be_filled_exactly(self, engine):
        engine.add_vesting(
            MANAGER, ALICE, 150_000 * UNIT, None, 0, DURATION, "community_airdrop", now=DEPLOY_TIME
        )
        stats = engine.get_category_stats("community_airdrop")
        assert stats["remaining"] == 0
        with pytest.raises(AllocationExceededError):
            engine.add_vesting(MANAGER, BOB, 1, None, 0, DURATION, "community_airdrop", now=DEPLOY_TIME)

    def test_insufficient_custody_rejected(self, capabilities):
        engine = make_engine(make_token(supply_tokens=1_000), capabilities)
        with pytest.raises(InsufficientCustodyError):
            add_alice(engine)
        assert len(engine.schedules) == 0

    def test_solvency_check_can_be_disabled(self, capabilities):
        engine = make_engine(make_token(supply_tokens=1_000), capabilities, enforce_solvency=False)
        add_alice(engine)
        report = engine.solvency_report()
        assert report["solvent"] is False
        assert report["surplus"] == 1_000 * UNIT - TOTAL


class TestAddVestingBatch:
    def test_batch_creates_all(self, engine):
        created = engine.add_vesting_batch(
            MANAGER,
            [
                {"beneficiary": ALICE, "amount": TOTAL, "duration": DURATION, "cliff": CLIFF, "category": "core_team"},
                {"beneficiary": BOB, "amount": UNIT, "duration": DAY, "category": "public_sale", "start": T + DAY},
            ],
            now=DEPLOY_TIME,
        )
        assert [s.beneficiary for s in created] == [ALICE, BOB]
        assert engine.get_vesting(BOB).start == T + DAY

    def test_batch_is_all_or_nothing(self, engine):
        with pytest.raises(AllocationExceededError):
            engine.add_vesting_batch(
                MANAGER,
                [
                    {"beneficiary": ALICE, "amount": 150_000 * UNIT, "duration": DURATION, "category": "core_team"},
                    {"beneficiary": BOB, "amount": 60_000 * UNIT, "duration": DURATION, "category": "core_team"},
                ],
                now=DEPLOY_TIME,
            )
        assert len(engine.schedules) == 0
        assert engine.get_category_stats("core_team")["allocated"] == 0

    def test_batch_rejects_duplicates_within_batch(self, engine):
        entry = {"beneficiary": ALICE, "amount": UNIT, "duration": DAY, "category": "core_team"}
        with pytest.raises(DuplicateBeneficiaryError):
            engine.add_vesting_batch(MANAGER, [entry, dict(entry)], now=DEPLOY_TIME)
        assert len(engine.schedules) == 0

    def test_batch_rejects_missing_field(self, engine):
        with pytest.raises(ValidationError, match="missing field"):
            engine.add_vesting_batch(MANAGER, [{"beneficiary": ALICE, "amount": UNIT}], now=DEPLOY_TIME)

    def test_empty_batch_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.add_vesting_batch(MANAGER, [], now=DEPLOY_TIME)


class TestRelease:
    def test_nothing_before_cliff(self, engine, token):
        add_alice(engine)
        now = T + 15 * DAY
        assert engine.releasable(ALICE, now=now) == 0

        result = engine.release(ALICE, now=now)

        assert result.amount == 0
        assert token.balance_of(ALICE) == 0

    def test_release_after_cliff_is_linear(self, engine, token):
        add_alice(engine)
        now = T + 60 * DAY
        expected = TOTAL * (60 * DAY) // DURATION

        result = engine.release(ALICE, now=now)

        assert result.amount == expected
        assert token.balance_of(ALICE) == expected
        assert engine.get_vesting(ALICE).released_amount == expected
        assert engine.releasable(ALICE, now=now) == 0
        assert engine.get_contract_stats()["total_released"] == expected

    def test_cliff_releases_accumulated_amount_at_once(self, engine):
        add_alice(engine)
        assert engine.releasable(ALICE, now=T + CLIFF - 1) == 0
        assert engine.releasable(ALICE, now=T + CLIFF) == TOTAL * CLIFF // DURATION

    def test_full_amount_after_duration(self, engine, token):
        add_alice(engine)
        engine.release(ALICE, now=T + 100 * DAY)
        engine.release(ALICE, now=T + DURATION + 1)

        assert token.balance_of(ALICE) == TOTAL
        assert engine.get_vesting_info(ALICE, now=T + DURATION + 1)["fully_released"] is True
        assert engine.release(ALICE, now=T + DURATION + 2 * DAY).amount == 0

    def test_custom_start_ignores_global_start(self, engine):
        add_alice(engine, start=T + 100 * DAY)
        assert engine.effective_start(ALICE) == T + 100 * DAY
        assert engine.releasable(ALICE, now=T + 60 * DAY) == 0

    def test_manager_may_release_for_beneficiary(self, engine, token):
        add_alice(engine)
        result = engine.release(MANAGER, ALICE, now=T + 60 * DAY)
        assert result.beneficiary == ALICE
        assert token.balance_of(ALICE) == result.amount
        assert token.balance_of(MANAGER) == 0

    def test_stranger_cannot_release_for_beneficiary(self, engine):
        add_alice(engine)
        with pytest.raises(UnauthorizedError):
            engine.release(MALLORY, ALICE, now=T + 60 * DAY)

    def test_padded_mixed_case_callers_match_their_roles(self, engine, token):
        add_alice(engine)
        padded_alice = f"  {ALICE.upper()} "

        result = engine.release(padded_alice, now=T + 60 * DAY)

        assert result.beneficiary == ALICE
        assert token.balance_of(ALICE) == result.amount > 0
        assert engine.events[-1].actor == ALICE

        engine.revoke_vesting(f"\t{ADMIN.upper()} ", ALICE, now=T + 61 * DAY)
        assert engine.get_vesting(ALICE).revoked
        assert engine.events[-1].actor == ADMIN

    def test_release_for_requires_manager_or_admin(self, engine, token):
        add_alice(engine)
        with pytest.raises(UnauthorizedError):
            engine.release_for(ALICE, ALICE, now=T + 60 * DAY)
        engine.release_for(ADMIN, ALICE, now=T + 60 * DAY)
        assert token.balance_of(ALICE) > 0

    def test_unknown_beneficiary(self, engine):
        with pytest.raises(ScheduleNotFoundError):
            engine.release(BOB, now=T + 60 * DAY)

    def test_failed_transfer_leaves_no_trace(self, capabilities):
        ledger = FailingLedger(balance=1_000_000 * UNIT)
        engine = make_engine(ledger, capabilities)
        add_alice(engine)

        with pytest.raises(TransferFailedError) as excinfo:
            engine.release(ALICE, now=T + 60 * DAY)

        assert excinfo.value.recoverable is True
        assert ledger.transfer_calls == 1
        assert engine.get_vesting(ALICE).released_amount == 0
        assert engine.get_contract_stats()["total_released"] == 0
        assert all(event.event_type != "TokensReleased" for event in engine.events)

    def test_rejected_transfer_leaves_no_trace(self, capabilities):
        ledger = FailingLedger(balance=1_000_000 * UNIT, raise_error=False)
        engine = make_engine(ledger, capabilities)
        add_alice(engine)

        with pytest.raises(TransferFailedError):
            engine.release(ALICE, now=T + 60 * DAY)
        assert engine.get_vesting(ALICE).released_amount == 0

    def test_zero_release_does_not_touch_ledger(self, capabilities):
        ledger = FailingLedger(balance=1_000_000 * UNIT)
        engine = make_engine(ledger, capabilities)
        add_alice(engine)
        assert engine.release(ALICE, now=T).amount == 0
        assert ledger.transfer_calls == 0


class TestRevocation:
    def test_revoke_blocks_release_and_keeps_allocation(self, engine):
        add_alice(engine)
        engine.release(ALICE, now=T + 60 * DAY)
        released = engine.get_vesting(ALICE).released_amount

        engine.revoke_vesting(ADMIN, ALICE, now=T + 61 * DAY)

        assert engine.releasable(ALICE, now=T + 200 * DAY) == 0
        assert engine.release(ALICE, now=T + 200 * DAY).amount == 0
        assert engine.get_vesting(ALICE).released_amount == released
        assert engine.get_category_stats("core_team")["allocated"] == TOTAL

    @pytest.mark.parametrize("partial_release_day", [None, 45])
    def test_restore_resumes_vesting(self, engine, partial_release_day):
        add_alice(engine)
        if partial_release_day is not None:
            engine.release(ALICE, now=T + partial_release_day * DAY)
        checkpoints = [T + 60 * DAY, T + 200 * DAY, T + DURATION]
        before = [engine.releasable(ALICE, now=at) for at in checkpoints]
        released = engine.get_vesting(ALICE).released_amount

        engine.revoke_vesting(ADMIN, ALICE, now=T + 50 * DAY)
        assert [engine.releasable(ALICE, now=at) for at in checkpoints] == [0, 0, 0]
        engine.restore_vesting(ADMIN, ALICE, now=T + 55 * DAY)

        assert [engine.releasable(ALICE, now=at) for at in checkpoints] == before
        assert engine.get_vesting(ALICE).released_amount == released
        assert [e.event_type for e in engine.events[-2:]] == ["VestingRevoked", "VestingRestored"]
        assert engine.release(ALICE, now=checkpoints[0]).amount == before[0]

    def test_revoke_requires_admin(self, engine):
        add_alice(engine)
        with pytest.raises(UnauthorizedError):
            engine.revoke_vesting(MANAGER, ALICE, now=T)

    def test_revoke_twice_rejected(self, engine):
        add_alice(engine)
        engine.revoke_vesting(ADMIN, ALICE, now=T)
        with pytest.raises(ValidationError):
            engine.revoke_vesting(ADMIN, ALICE, now=T)

    def test_restore_unknown_beneficiary(self, engine):
        with pytest.raises(ScheduleNotFoundError):
            engine.restore_vesting(ADMIN, BOB, now=T)

    def test_revoke_lowers_outstanding_obligations(self, engine):
        add_alice(engine)
        assert engine.outstanding_obligations() == TOTAL
        engine.revoke_vesting(ADMIN, ALICE, now=T)
        assert engine.outstanding_obligations() == 0


class TestPause:
    def test_pause_blocks_releases_only(self, engine):
        add_alice(engine)
        engine.pause(PAUSER, now=T)

        with pytest.raises(PausedError, match="Pausable: paused"):
            engine.release(ALICE, now=T + 60 * DAY)
        with pytest.raises(PausedError):
            engine.release_for(MANAGER, ALICE, now=T + 60 * DAY)

        engine.add_vesting(MANAGER, BOB, UNIT, None, 0, DAY, "public_sale", now=T)
        engine.revoke_vesting(ADMIN, BOB, now=T)

    def test_unpause_restores_releases(self, engine, token):
        reference = make_engine()
        add_alice(reference)
        expected = reference.release(ALICE, now=T + 60 * DAY).amount

        add_alice(engine)
        engine.pause(PAUSER, now=T)
        with pytest.raises(PausedError):
            engine.release(ALICE, now=T + 60 * DAY)
        assert engine.get_vesting(ALICE).released_amount == 0
        assert token.balance_of(ALICE) == 0

        engine.unpause(PAUSER, now=T + DAY)
        result = engine.release(ALICE, now=T + 60 * DAY)

        assert result.amount == expected
        assert engine.get_vesting(ALICE).released_amount == expected
        assert token.balance_of(ALICE) == expected

    def test_pause_requires_pause_controller(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.pause(MANAGER, now=T)
        assert engine.paused is False

    def test_double_pause_rejected(self, engine):
        engine.pause(PAUSER, now=T)
        with pytest.raises(ValidationError):
            engine.pause(PAUSER, now=T)
        engine.unpause(PAUSER, now=T)
        with pytest.raises(ValidationError):
            engine.unpause(PAUSER, now=T)


class TestGlobalStart:
    def test_update_before_start_moves_default_schedules(self, engine):
        add_alice(engine)
        engine.add_vesting(MANAGER, BOB, UNIT, T + 5 * DAY, 0, DAY, "public_sale", now=DEPLOY_TIME)

        previous = engine.update_global_vesting_start(ADMIN, T + 30 * DAY, now=DEPLOY_TIME + DAY)

        assert previous == T
        assert engine.effective_start(ALICE) == T + 30 * DAY
        assert engine.effective_start(BOB) == T + 5 * DAY

    def test_update_after_start_rejected(self, engine):
        with pytest.raises(AlreadyStartedError, match="Vesting already started"):
            engine.update_global_vesting_start(ADMIN, T + 30 * DAY, now=T)
        assert engine.global_vesting_start == T

    def test_new_start_must_be_in_future(self, engine):
        with pytest.raises(ValidationError, match="Start time must be in future"):
            engine.update_global_vesting_start(ADMIN, DEPLOY_TIME, now=DEPLOY_TIME + DAY)

    def test_update_requires_admin(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.update_global_vesting_start(MANAGER, T + DAY, now=DEPLOY_TIME)


class TestCategoryCaps:
    def test_raise_cap(self, engine):
        previous = engine.update_category_allocation(ADMIN, "core_team", 300_000 * UNIT, now=DEPLOY_TIME)
        assert previous == 200_000 * UNIT
        engine.add_vesting(MANAGER, ALICE, 250_000 * UNIT, None, 0, DURATION, "core_team", now=DEPLOY_TIME)

    def test_cap_below_allocated_rejected(self, engine):
        add_alice(engine)
        with pytest.raises(ValidationError):
            engine.update_category_allocation(ADMIN, "core_team", TOTAL - 1, now=DEPLOY_TIME)
        assert engine.get_category_stats("core_team")["max_allocation"] == 200_000 * UNIT

    def test_update_requires_admin(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.update_category_allocation(MANAGER, "core_team", 0, now=DEPLOY_TIME)


class TestEmergencyWithdraw:
    def test_withdraw_moves_tokens_and_records_audit(self, engine, token, caplog):
        with caplog.at_level(logging.CRITICAL, logger="vestledger"):
            record = engine.emergency_withdraw(ADMIN, BOB, 1_000 * UNIT, "key compromise", now=T)

        assert record == {
            "caller": ADMIN,
            "to": BOB,
            "amount": 1_000 * UNIT,
            "reason": "key compromise",
            "timestamp": T,
        }
        assert token.balance_of(BOB) == 1_000 * UNIT
        assert engine.emergency_withdrawals == [record]
        assert engine.events[-1].event_type == "EmergencyWithdraw"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_reason_required(self, engine, token):
        with pytest.raises(InvalidReasonError, match="Reason required"):
            engine.emergency_withdraw(ADMIN, BOB, UNIT, "   ", now=T)
        assert token.balance_of(BOB) == 0

    def test_requires_admin(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.emergency_withdraw(MANAGER, MANAGER, UNIT, "theft", now=T)

    def test_works_while_paused(self, engine, token):
        engine.pause(PAUSER, now=T)
        engine.emergency_withdraw(ADMIN, BOB, UNIT, "migration", now=T)
        assert token.balance_of(BOB) == UNIT

    def test_can_leave_custody_insolvent(self, engine):
        add_alice(engine)
        engine.emergency_withdraw(ADMIN, BOB, 1_000_000 * UNIT - TOTAL + 1, "migration", now=T)
        report = engine.solvency_report()
        assert report["solvent"] is False
        assert report["surplus"] == -1

    def test_ledger_failure_surfaces(self, engine):
        with pytest.raises(TransferFailedError):
            engine.emergency_withdraw(ADMIN, BOB, 2_000_000 * UNIT, "migration", now=T)
        assert engine.emergency_withdrawals == []


class TestViews:
    def test_get_vestings_batch(self, engine):
        add_alice(engine)
        engine.add_vesting(MANAGER, BOB, UNIT, None, 0, DAY, "public_sale", now=DEPLOY_TIME)
        schedules = engine.get_vestings([BOB, ALICE])
        assert [s.beneficiary for s in schedules] == [BOB, ALICE]

    def test_returned_schedule_is_a_copy(self, engine):
        add_alice(engine)
        schedule = engine.get_vesting(ALICE)
        schedule.released_amount = TOTAL
        assert engine.get_vesting(ALICE).released_amount == 0

    def test_vesting_info(self, engine):
        add_alice(engine)
        info = engine.get_vesting_info(ALICE, now=T + 60 * DAY)
        assert info["effective_start"] == T
        assert info["cliff_end"] == T + CLIFF
        assert info["vesting_end"] == T + DURATION
        assert info["vested_amount"] == info["releasable_amount"]

    def test_contract_stats(self, engine):
        add_alice(engine)
        engine.release(ALICE, now=T + DURATION)
        stats = engine.get_contract_stats()
        assert stats == {
            "total_allocated": TOTAL,
            "total_released": TOTAL,
            "custody_balance": 1_000_000 * UNIT - TOTAL,
        }


class TestSerialization:
    def test_round_trip_preserves_state(self, engine, token, capabilities):
        add_alice(engine)
        engine.release(ALICE, now=T + 60 * DAY)
        engine.pause(PAUSER, now=T + 61 * DAY)

        restored = VestingEngine.from_dict(engine.to_dict(), token, capabilities)

        assert restored.paused is True
        assert restored.global_vesting_start == T
        assert restored.get_vesting(ALICE) == engine.get_vesting(ALICE)
        assert restored.get_all_category_stats() == engine.get_all_category_stats()
        assert restored.get_contract_stats() == engine.get_contract_stats()
        assert [e.event_type for e in restored.events] == [e.event_type for e in engine.events]

    def test_restored_engine_keeps_enforcing_caps(self, engine, token):
        add_alice(engine)
        restored = VestingEngine.from_dict(engine.to_dict(), token, make_capabilities())
        with pytest.raises(AllocationExceededError):
            restored.add_vesting(MANAGER, BOB, 200_000 * UNIT, None, 0, DAY, "core_team", now=DEPLOY_TIME)
