"""
Timelock codec.

Seven relative stage offsets plus the deployment timestamp, packed into one
256-bit word exactly as the escrow contracts read it:

    bits [32*i, 32*i + 32)   offset of stage i (seconds after deployment)
    bits [224, 256)          deployment timestamp

Offsets are relative so the same word can be signed off-chain before the
escrow exists; the deployer stamps deployed_at when the escrow is created.
"""

from dataclasses import dataclass, replace, fields
from enum import IntEnum
from typing import Dict, Optional

from .errors import ValidationError

UINT32_MAX = 2**32 - 1
UINT256_MAX = 2**256 - 1
STAGE_BITS = 32
DEPLOYED_AT_OFFSET = 224

# Clock skew tolerance between our clock and the chains (seconds)
DEFAULT_SAFETY_MARGIN = 120

# Default gap between source cancellation and its public counterpart
SRC_PUBLIC_CANCELLATION_DELAY = 3600


class Stage(IntEnum):
    """Timelock stages, in packing order."""
    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6


_STAGE_FIELDS = {
    Stage.SRC_WITHDRAWAL: "src_withdrawal",
    Stage.SRC_PUBLIC_WITHDRAWAL: "src_public_withdrawal",
    Stage.SRC_CANCELLATION: "src_cancellation",
    Stage.SRC_PUBLIC_CANCELLATION: "src_public_cancellation",
    Stage.DST_WITHDRAWAL: "dst_withdrawal",
    Stage.DST_PUBLIC_WITHDRAWAL: "dst_public_withdrawal",
    Stage.DST_CANCELLATION: "dst_cancellation",
}


@dataclass(frozen=True)
class Timelocks:
    """Relative stage offsets (seconds) and the deployment timestamp."""
    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int
    deployed_at: int = 0

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError(f"Timelock {f.name} must be an integer, got {value!r}")
            if value < 0 or value > UINT32_MAX:
                raise ValidationError(f"Timelock {f.name}={value} does not fit in 32 bits")

        if not self.src_withdrawal < self.src_public_withdrawal < self.src_cancellation < self.src_public_cancellation:
            raise ValidationError(
                "Source timelocks must be strictly increasing: "
                f"withdrawal={self.src_withdrawal} public_withdrawal={self.src_public_withdrawal} "
                f"cancellation={self.src_cancellation} public_cancellation={self.src_public_cancellation}"
            )
        if not self.dst_withdrawal < self.dst_public_withdrawal < self.dst_cancellation:
            raise ValidationError(
                "Destination timelocks must be strictly increasing: "
                f"withdrawal={self.dst_withdrawal} public_withdrawal={self.dst_public_withdrawal} "
                f"cancellation={self.dst_cancellation}"
            )
        if self.dst_cancellation >= self.src_cancellation:
            raise ValidationError(
                f"Destination cancellation ({self.dst_cancellation}) must precede "
                f"source cancellation ({self.src_cancellation})"
            )

    @classmethod
    def build(
        cls,
        src_withdrawal: int,
        src_cancellation: int,
        dst_withdrawal: int,
        dst_cancellation: int,
        src_public_withdrawal: Optional[int] = None,
        src_public_cancellation: Optional[int] = None,
        dst_public_withdrawal: Optional[int] = None,
        deployed_at: int = 0,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
    ) -> "Timelocks":
        """
        Build timelocks from the four stages a caller usually cares about.

        Omitted public stages default to the midpoint of their window
        (public cancellation one hour after cancellation). The result is
        checked against the cross-chain safety margin.
        """
        if src_public_withdrawal is None:
            src_public_withdrawal = (src_withdrawal + src_cancellation) // 2
        if src_public_cancellation is None:
            src_public_cancellation = src_cancellation + SRC_PUBLIC_CANCELLATION_DELAY
        if dst_public_withdrawal is None:
            dst_public_withdrawal = (dst_withdrawal + dst_cancellation) // 2

        timelocks = cls(
            src_withdrawal=src_withdrawal,
            src_public_withdrawal=src_public_withdrawal,
            src_cancellation=src_cancellation,
            src_public_cancellation=src_public_cancellation,
            dst_withdrawal=dst_withdrawal,
            dst_public_withdrawal=dst_public_withdrawal,
            dst_cancellation=dst_cancellation,
            deployed_at=deployed_at,
        )
        timelocks.check_cross_chain(safety_margin)
        return timelocks

    def check_cross_chain(self, safety_margin: int = DEFAULT_SAFETY_MARGIN):
        """Destination must close strictly before source, with margin to spare."""
        if safety_margin < 0:
            raise ValidationError(f"Safety margin must be non-negative, got {safety_margin}")
        if not self.dst_cancellation < self.src_cancellation - safety_margin:
            raise ValidationError(
                f"Destination cancellation ({self.dst_cancellation}s) must be earlier than "
                f"source cancellation ({self.src_cancellation}s) minus safety margin ({safety_margin}s)"
            )

    def offset(self, stage: Stage) -> int:
        return getattr(self, _STAGE_FIELDS[Stage(stage)])

    def absolute(self, stage: Stage, deployed_at: Optional[int] = None) -> int:
        """Absolute unix time at which a stage begins."""
        base = self.deployed_at if deployed_at is None else deployed_at
        if base <= 0:
            raise ValidationError("Deployment timestamp is not set")
        return base + self.offset(stage)

    def with_deployed_at(self, deployed_at: int) -> "Timelocks":
        return replace(self, deployed_at=deployed_at)

    def pack(self) -> int:
        word = self.deployed_at << DEPLOYED_AT_OFFSET
        for stage in Stage:
            word |= self.offset(stage) << (STAGE_BITS * stage)
        return word

    @classmethod
    def unpack(cls, word: int) -> "Timelocks":
        if not isinstance(word, int) or word < 0 or word > UINT256_MAX:
            raise ValidationError(f"Timelocks word out of range: {word!r}")
        values = {
            name: (word >> (STAGE_BITS * stage)) & UINT32_MAX
            for stage, name in _STAGE_FIELDS.items()
        }
        # bits 224..255
        values["deployed_at"] = word >> DEPLOYED_AT_OFFSET
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> "Timelocks":
        return cls(**{f.name: int(data[f.name]) for f in fields(cls) if f.name in data})


def pack(timelocks: Timelocks) -> int:
    """Pack timelocks into a single 256-bit word."""
    return timelocks.pack()


def unpack(word: int) -> Timelocks:
    """Unpack a 256-bit word into timelocks (validated)."""
    return Timelocks.unpack(word)


def absolute(timelocks: Timelocks, stage: Stage, deployed_at: Optional[int] = None) -> int:
    """Absolute unix time of a stage."""
    return timelocks.absolute(stage, deployed_at)
