"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from seapack.errors import PolicyError

NetworkMode = Literal["online", "offline"]


@dataclass(frozen=True, slots=True)
class Policy:
    network_mode: NetworkMode = "online"
    verify_cache_hits: bool = True

    @property
    def offline(self) -> bool:
        return self.network_mode == "offline"


def ensure_network_allowed(*, policy: Policy, operation: str, url: str = "") -> None:
    if policy.offline:
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Unset SEAPACK_OFFLINE or populate the runtime cache on a connected host first.",
            context={"operation": operation, "url": url},
        )
