"""Process placement of the current worker."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class MPIContext:
    """Rank and world size of this worker; read-only during graph building."""

    world_rank: int = 0
    world_size: int = 1
    local_rank: int = 0

    def __post_init__(self) -> None:
        if self.world_size < 1:
            raise ValueError(f"world_size must be >= 1, got {self.world_size}")
        if not 0 <= self.world_rank < self.world_size:
            raise ValueError(f"world_rank must be in [0, {self.world_size - 1}], got {self.world_rank}")
        if self.local_rank < 0:
            raise ValueError(f"local_rank must be >= 0, got {self.local_rank}")

    @property
    def is_distributed(self) -> bool:
        return self.world_size > 1

    @classmethod
    def from_env(cls) -> "MPIContext":
        """Read RANK / WORLD_SIZE / LOCAL_RANK as set by torchrun-style launchers."""
        rank = int(os.environ.get("RANK", "0"))
        world_size = int(os.environ.get("WORLD_SIZE", "1"))
        local_rank = int(os.environ.get("LOCAL_RANK", str(rank)))
        return cls(world_rank=rank, world_size=world_size, local_rank=local_rank)
