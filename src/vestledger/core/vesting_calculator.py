"""
Pure vesting math.

The curve is linear over the full duration starting at the effective start.
The cliff only gates when tokens become releasable; it does not move the
curve. At ``effective_start + cliff`` the whole amount vested so far (which
includes the cliff period) becomes releasable at once.

All amounts are integer base units; partial vesting rounds down.
"""

from __future__ import annotations

from typing import Any, Dict

from .schedules import VestingSchedule


def effective_start(schedule: VestingSchedule, global_start: int) -> int:
    """Schedule start, falling back to the global start when unset."""
    return global_start if schedule.uses_global_start else schedule.start


def cliff_end(schedule: VestingSchedule, global_start: int) -> int:
    return effective_start(schedule, global_start) + schedule.cliff_duration


def vesting_end(schedule: VestingSchedule, global_start: int) -> int:
    return effective_start(schedule, global_start) + schedule.total_duration


def vested_amount(schedule: VestingSchedule, global_start: int, now: int) -> int:
    """
    Amount vested at ``now``, ignoring cliff, revocation and prior releases.

    Args:
        schedule: Vesting record
        global_start: Global vesting start used when the schedule has none
        now: Current instant

    Returns:
        0 before the start, ``total_amount`` from the end of the duration,
        ``total_amount * elapsed // total_duration`` in between
    """
    start = effective_start(schedule, global_start)
    if now < start:
        return 0
    if now >= start + schedule.total_duration:
        return schedule.total_amount
    return schedule.total_amount * (now - start) // schedule.total_duration


def releasable_amount(schedule: VestingSchedule, global_start: int, now: int) -> int:
    """
    Amount the beneficiary could receive at ``now``.

    Zero while revoked or before the cliff ends; otherwise vested minus
    already released.
    """
    if schedule.revoked:
        return 0
    if now < cliff_end(schedule, global_start):
        return 0
    return max(0, vested_amount(schedule, global_start, now) - schedule.released_amount)


def vesting_status(schedule: VestingSchedule, global_start: int, now: int) -> Dict[str, Any]:
    """Reporting view combining the stored record with time-derived values."""
    status = schedule.to_dict()
    status.update({
        "effective_start": effective_start(schedule, global_start),
        "cliff_end": cliff_end(schedule, global_start),
        "vesting_end": vesting_end(schedule, global_start),
        "vested_amount": vested_amount(schedule, global_start, now),
        "releasable_amount": releasable_amount(schedule, global_start, now),
        "fully_released": schedule.released_amount == schedule.total_amount,
    })
    return status
