"""The sentinel fuse the runtime checks for an embedded startup blob."""

from __future__ import annotations

from dataclasses import dataclass

from seapack.errors import InjectionError, MarkerNotFound

FUSE_SENTINEL = b"NODE_SEA_FUSE_fce680ab2cc467b6e072b8b5df1996b2"
FUSE_UNSET = FUSE_SENTINEL + b":0"
FUSE_SET = FUSE_SENTINEL + b":1"

_STATE_BYTES = {ord("0"): False, ord("1"): True}


@dataclass(frozen=True, slots=True)
class FuseLocation:
    offset: int
    flipped: bool

    @property
    def state_offset(self) -> int:
        return self.offset + len(FUSE_SENTINEL) + 1


def locate_fuse(image: bytes) -> FuseLocation:
    """Find the single ``<sentinel>:<0|1>`` occurrence in ``image``."""
    needle = FUSE_SENTINEL + b":"
    first = image.find(needle)
    if first < 0:
        raise MarkerNotFound(
            "Runtime executable does not contain the SEA fuse.",
            context={"operation": "inject", "sentinel": FUSE_SENTINEL.decode()},
        )
    if image.find(needle, first + 1) >= 0:
        raise InjectionError(
            "Runtime executable contains more than one SEA fuse.",
            hint="The executable is not a supported runtime build.",
            context={"operation": "inject", "sentinel": FUSE_SENTINEL.decode()},
        )
    state_index = first + len(needle)
    state = image[state_index] if state_index < len(image) else -1
    if state not in _STATE_BYTES:
        raise InjectionError(
            "SEA fuse has an unexpected state byte.",
            context={"operation": "inject", "offset": str(first)},
        )
    return FuseLocation(offset=first, flipped=_STATE_BYTES[state])


def set_fuse(image: bytearray, location: FuseLocation, *, flipped: bool = True) -> None:
    image[location.state_offset] = ord("1") if flipped else ord("0")
