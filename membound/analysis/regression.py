"""
Least-squares helpers shared by the analysis modules.

All functions accept irregularly spaced series; x values are timestamps in
seconds and are centered before fitting to keep the arithmetic stable for
epoch-sized inputs.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class TrendFit:
    """Result of a straight-line fit y = slope * x + intercept."""
    slope: float
    intercept: float
    r_squared: float
    n: int

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept


def linear_fit(
    xs: Sequence[float],
    ys: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> Optional[TrendFit]:
    """
    Fit a line by (optionally weighted) least squares.

    Returns None when there are fewer than two points or all x values are
    equal. R^2 is 0.0 for a perfectly flat series, since no variance is
    explained.
    """
    n = len(xs)
    if n != len(ys):
        raise ValueError("xs and ys must have the same length")
    if n < 2:
        return None

    if weights is None:
        weights = [1.0] * n
    elif len(weights) != n:
        raise ValueError("weights must match the number of points")

    total_weight = sum(weights)
    if total_weight <= 0:
        return None

    mean_x = sum(w * x for w, x in zip(weights, xs)) / total_weight
    mean_y = sum(w * y for w, y in zip(weights, ys)) / total_weight

    sxx = sum(w * (x - mean_x) ** 2 for w, x in zip(weights, xs))
    if sxx == 0:
        return None
    sxy = sum(w * (x - mean_x) * (y - mean_y) for w, x, y in zip(weights, xs, ys))

    slope = sxy / sxx
    intercept = mean_y - slope * mean_x

    ss_tot = sum(w * (y - mean_y) ** 2 for w, y in zip(weights, ys))
    ss_res = sum(
        w * (y - (slope * x + intercept)) ** 2 for w, x, y in zip(weights, xs, ys)
    )
    if ss_tot <= 1e-12:
        r_squared = 0.0
    else:
        r_squared = max(0.0, min(1.0, 1.0 - ss_res / ss_tot))

    return TrendFit(slope=slope, intercept=intercept, r_squared=r_squared, n=n)


def exponential_weights(n: int, half_life: float) -> list:
    """Weights for n points, oldest first, halving every `half_life` points back."""
    if half_life <= 0:
        return [1.0] * n
    decay = math.log(2) / half_life
    return [math.exp(-decay * (n - 1 - i)) for i in range(n)]


def mean_and_stddev(values: Sequence[float]):
    """Population mean and standard deviation (0, 0 for an empty sequence)."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


__all__ = ['TrendFit', 'linear_fit', 'exponential_weights', 'mean_and_stddev']
