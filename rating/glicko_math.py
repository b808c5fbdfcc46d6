"""Pure Glicko-2 functions.

Reference: Glickman, "Example of the Glicko-2 system" (glicko.net/glicko/glicko2.pdf).
All functions work on plain floats and never raise for finite inputs; the
volatility solver reports numerical trouble through ``VolatilityResult``
instead of producing NaN or Infinity.
"""
import math
from typing import Iterable, NamedTuple, Tuple

GLICKO_SCALE = 173.7178
INITIAL_RATING = 1500.0
EXP_CLAMP = 10.0
DEFAULT_EPSILON = 1e-6
DEFAULT_MAX_ITERATIONS = 100


class Opponent(NamedTuple):
    mu: float
    phi: float
    score: float


class VolatilityResult(NamedTuple):
    sigma: float
    converged: bool
    iterations: int
    aborted: bool


def to_internal_scale(rating: float, rd: float) -> Tuple[float, float]:
    mu = (rating - INITIAL_RATING) / GLICKO_SCALE
    phi = rd / GLICKO_SCALE
    return mu, phi


def from_internal_scale(mu: float, phi: float) -> Tuple[float, float]:
    rating = mu * GLICKO_SCALE + INITIAL_RATING
    rd = phi * GLICKO_SCALE
    return rating, rd


def clamped_exp(x: float) -> float:
    return math.exp(max(-EXP_CLAMP, min(EXP_CLAMP, x)))


def g(phi: float) -> float:
    """Weight of a game given the opponent's deviation."""
    return 1.0 / math.sqrt(1.0 + 3.0 * phi * phi / (math.pi * math.pi))


def expected_score(mu: float, mu_j: float, phi_j: float) -> float:
    return 1.0 / (1.0 + clamped_exp(-g(phi_j) * (mu - mu_j)))


def compute_variance(mu: float, opponents: Iterable[Opponent]) -> float:
    """Estimated variance ``v``; infinite when no game carries information."""
    v_inv = 0.0
    for opp in opponents:
        weight = g(opp.phi)
        expected = expected_score(mu, opp.mu, opp.phi)
        v_inv += weight * weight * expected * (1.0 - expected)
    if v_inv <= 0.0:
        return math.inf
    return 1.0 / v_inv


def score_sum(mu: float, opponents: Iterable[Opponent]) -> float:
    total = 0.0
    for opp in opponents:
        total += g(opp.phi) * (opp.score - expected_score(mu, opp.mu, opp.phi))
    return total


def compute_delta(v: float, mu: float, opponents: Iterable[Opponent]) -> float:
    return v * score_sum(mu, opponents)


def _volatility_objective(x: float, delta_sq: float, phi_sq: float, v: float, a: float, tau_sq: float) -> float:
    ex = clamped_exp(x)
    numerator = ex * (delta_sq - phi_sq - v - ex)
    denominator = 2.0 * (phi_sq + v + ex) ** 2
    return numerator / denominator - (x - a) / tau_sq


def solve_volatility(
    sigma: float,
    delta: float,
    phi: float,
    v: float,
    tau: float,
    epsilon: float = DEFAULT_EPSILON,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> VolatilityResult:
    """Find the new volatility with the Illinois variant of regula falsi.

    Domain: ``sigma > 0``, ``phi > 0``, ``tau > 0`` and finite ``delta``/``v``.
    Both the bracket search and the root iteration are capped at
    ``max_iterations``. Any non-finite intermediate aborts the step and the
    prior ``sigma`` is returned with ``aborted=True``.
    """
    if not (sigma > 0 and phi > 0 and tau > 0) or not all(map(math.isfinite, (sigma, delta, phi, v, tau))):
        return VolatilityResult(sigma, False, 0, True)

    a = math.log(sigma * sigma)
    tau_sq = tau * tau
    delta_sq = delta * delta
    phi_sq = phi * phi

    def f(x: float) -> float:
        return _volatility_objective(x, delta_sq, phi_sq, v, a, tau_sq)

    big_a = a
    if delta_sq > phi_sq + v:
        big_b = math.log(delta_sq - phi_sq - v)
    else:
        k = 1
        while f(a - k * tau) < 0:
            k += 1
            if k > max_iterations:
                return VolatilityResult(sigma, False, k, True)
        big_b = a - k * tau

    f_a = f(big_a)
    f_b = f(big_b)
    iterations = 0
    while abs(big_b - big_a) > epsilon:
        if iterations >= max_iterations:
            break
        iterations += 1
        denominator = f_b - f_a
        if denominator == 0 or not math.isfinite(denominator):
            return VolatilityResult(sigma, False, iterations, True)
        big_c = big_a + (big_a - big_b) * f_a / denominator
        f_c = f(big_c)
        if not (math.isfinite(big_c) and math.isfinite(f_c)):
            return VolatilityResult(sigma, False, iterations, True)
        if f_c * f_b <= 0:
            big_a, f_a = big_b, f_b
        else:
            f_a /= 2.0
        big_b, f_b = big_c, f_c

    new_sigma = clamped_exp(big_a / 2.0)
    if not math.isfinite(new_sigma):
        return VolatilityResult(sigma, False, iterations, True)
    converged = abs(big_b - big_a) <= epsilon
    return VolatilityResult(new_sigma, converged, iterations, False)
