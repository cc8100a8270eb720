"""
Time-lock codec shared by both legs of a swap.

Seven relative offsets (seconds) and one absolute deployed-at timestamp are
packed into a single uint256, the same layout the escrow contracts read:

    bits   0..31   src withdrawal
    bits  32..63   src public withdrawal
    bits  64..95   src cancellation
    bits  96..127  src public cancellation
    bits 128..159  dst withdrawal
    bits 160..191  dst public withdrawal
    bits 192..223  dst cancellation
    bits 224..255  deployed at

Absolute deadline for a stage = deployed_at + offset.
"""

from enum import Enum, IntEnum
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from .errors import OutOfRange, ValidationError

UINT32_MAX = 0xffffffff
DEPLOYED_AT_OFFSET = 224
DEPLOYED_AT_MASK = UINT32_MAX << DEPLOYED_AT_OFFSET


class Leg(str, Enum):
    """Which side of the swap an escrow belongs to."""
    SRC = "src"
    DST = "dst"


class Stage(IntEnum):
    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6


_FIELDS = (
    "src_withdrawal",
    "src_public_withdrawal",
    "src_cancellation",
    "src_public_cancellation",
    "dst_withdrawal",
    "dst_public_withdrawal",
    "dst_cancellation",
)


@dataclass(frozen=True)
class TimeLockSchedule:
    """Relative offsets (seconds) for both legs plus deployed-at."""
    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int
    deployed_at: int = 0

    def validate(self) -> "TimeLockSchedule":
        """Reject schedules whose stages are not strictly increasing per leg."""
        src = (self.src_withdrawal, self.src_public_withdrawal,
               self.src_cancellation, self.src_public_cancellation)
        dst = (self.dst_withdrawal, self.dst_public_withdrawal, self.dst_cancellation)
        for leg, stages in (("src", src), ("dst", dst)):
            if any(s < 0 for s in stages):
                raise ValidationError(f"{leg} time-locks must be non-negative", leg=leg)
            if any(a >= b for a, b in zip(stages, stages[1:])):
                raise ValidationError(f"{leg} time-locks must be strictly increasing",
                                      leg=leg, stages=str(stages))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeLockSchedule":
        try:
            values = {name: int(data[name]) for name in _FIELDS}
        except KeyError as e:
            raise ValidationError(f"Missing time-lock field: {e.args[0]}")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid time-lock value: {e}")
        values["deployed_at"] = int(data.get("deployed_at", 0) or 0)
        return cls(**values)


@dataclass(frozen=True)
class LegTimeLocks:
    """Time-locks of one leg, with absolute deadlines derived from deployed_at."""
    leg: Leg
    deployed_at: int
    withdrawal: int
    public_withdrawal: int
    cancellation: int
    public_cancellation: Optional[int] = None

    @property
    def withdrawal_deadline(self) -> int:
        return self.deployed_at + self.withdrawal

    @property
    def public_withdrawal_deadline(self) -> int:
        return self.deployed_at + self.public_withdrawal

    @property
    def cancellation_deadline(self) -> int:
        return self.deployed_at + self.cancellation

    @property
    def public_cancellation_deadline(self) -> Optional[int]:
        if self.public_cancellation is None:
            return None
        return self.deployed_at + self.public_cancellation


def _check_uint32(name: str, value: int):
    if not isinstance(value, int) or value < 0 or value > UINT32_MAX:
        raise OutOfRange(f"{name} does not fit in 32 bits", field=name, value=value)


def pack(schedule: TimeLockSchedule) -> int:
    """Pack a schedule into its uint256 representation."""
    packed = 0
    for stage in Stage:
        name = _FIELDS[stage]
        value = getattr(schedule, name)
        _check_uint32(name, value)
        packed |= value << (stage * 32)
    _check_uint32("deployed_at", schedule.deployed_at)
    return packed | (schedule.deployed_at << DEPLOYED_AT_OFFSET)


def unpack(packed: int) -> TimeLockSchedule:
    """Inverse of pack()."""
    if packed < 0 or packed >> 256:
        raise OutOfRange("packed time-locks must be a uint256", value=packed)
    values = {
        _FIELDS[stage]: (packed >> (stage * 32)) & UINT32_MAX
        for stage in Stage
    }
    return TimeLockSchedule(deployed_at=get_deployed_at(packed), **values)


def get_deployed_at(packed: int) -> int:
    return (packed & DEPLOYED_AT_MASK) >> DEPLOYED_AT_OFFSET


def set_deployed_at(packed: int, timestamp: int) -> int:
    """
    Replace the deployed-at field, leaving every other bit untouched.

    Raises OutOfRange instead of truncating a timestamp wider than 32 bits.
    """
    _check_uint32("deployed_at", timestamp)
    return (packed & ~DEPLOYED_AT_MASK) | (timestamp << DEPLOYED_AT_OFFSET)


def unpack_for_leg(packed: int, leg: Leg) -> LegTimeLocks:
    """Read the stages of one leg from a packed value."""
    schedule = unpack(packed)
    leg = Leg(leg)
    if leg is Leg.SRC:
        return LegTimeLocks(
            leg=leg,
            deployed_at=schedule.deployed_at,
            withdrawal=schedule.src_withdrawal,
            public_withdrawal=schedule.src_public_withdrawal,
            cancellation=schedule.src_cancellation,
            public_cancellation=schedule.src_public_cancellation,
        )
    return LegTimeLocks(
        leg=leg,
        deployed_at=schedule.deployed_at,
        withdrawal=schedule.dst_withdrawal,
        public_withdrawal=schedule.dst_public_withdrawal,
        cancellation=schedule.dst_cancellation,
    )
