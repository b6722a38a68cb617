"""
Derivative Size Policy

Declarative (bound, suffix) table plus a pure planner. No codec involved, so
the no-upscale rule is testable with plain integers.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple


@dataclass(frozen=True)
class SizeClass:
    bound: int  # longest edge, px
    suffix: str


@dataclass(frozen=True)
class PlannedDerivative:
    size_class: SizeClass
    width: int
    height: int

    @property
    def suffix(self) -> str:
        return self.size_class.suffix


# Descending; each produces "{bound}w"
DERIVATIVE_SIZES: Tuple[SizeClass, ...] = (
    SizeClass(1920, "1920w"),
    SizeClass(1280, "1280w"),
    SizeClass(640, "640w"),
    SizeClass(320, "320w"),
)


def fit_within(width: int, height: int, bound: int) -> Tuple[int, int]:
    """Scale so the longer edge equals bound, keeping aspect ratio. Never upscales."""
    longest = max(width, height)
    if longest <= bound:
        return width, height
    scale = bound / longest
    return max(1, round(width * scale)), max(1, round(height * scale))


def plan_derivatives(
    width: int,
    height: int,
    sizes: Sequence[SizeClass] = DERIVATIVE_SIZES,
) -> Tuple[List[PlannedDerivative], List[SizeClass]]:
    """
    Decide which size classes to produce for a source of width x height.

    A class is skipped when the source is smaller than its bound on both axes.

    Returns:
        (planned derivatives in table order, skipped size classes)
    """
    planned: List[PlannedDerivative] = []
    skipped: List[SizeClass] = []

    for size_class in sizes:
        if width < size_class.bound and height < size_class.bound:
            skipped.append(size_class)
            continue
        target_w, target_h = fit_within(width, height, size_class.bound)
        planned.append(PlannedDerivative(size_class, target_w, target_h))

    return planned, skipped
