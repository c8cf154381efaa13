"""Module for Bode frequency response analysis and crossover detection."""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from scipy import optimize

logger = logging.getLogger(__name__)

# Relative size of the default absolute frequency tolerance w.r.t. the window
XTOL_SCALE = 1e-12


class BodeAnalysisError(Exception):
    """Base class for all errors raised by the Bode analysis pipeline."""


class InvalidRangeError(BodeAnalysisError, ValueError):
    """Raised when wmin/wmax/points do not describe a valid frequency grid."""


class OutOfDomainError(BodeAnalysisError, ValueError):
    """Raised when the phase interpolant is queried outside its grid."""


class NoRootInRangeError(BodeAnalysisError):
    """
    Raised when a requested crossover does not exist in the frequency window.

    Attributes:
        kind: Crossover type ('phase' or 'gain')
        wmin: Lower bound of the searched window (rad/s)
        wmax: Upper bound of the searched window (rad/s)
    """

    def __init__(self, kind: str, wmin: float, wmax: float) -> None:
        self.kind = kind
        self.wmin = wmin
        self.wmax = wmax
        super().__init__(
            f"No {kind} crossover in [{wmin:g}, {wmax:g}] rad/s: "
            "target function does not change sign across the window"
        )


class ConvergenceError(BodeAnalysisError, RuntimeError):
    """Raised when a root search hits its iteration cap."""


class ResponseFunction(Protocol):
    """Frequency response G(s), evaluated at s = jω."""

    def __call__(self, s: complex) -> complex:
        ...


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

def _validate_range(wmin: float, wmax: float, points: int) -> None:
    """Checks the analysis window before any evaluation takes place."""
    if isinstance(points, bool) or not isinstance(points, (int, np.integer)):
        raise InvalidRangeError(f"points must be an integer, got {points!r}")
    if points < 2:
        raise InvalidRangeError(f"points must be >= 2, got {points}")
    if not (math.isfinite(wmin) and math.isfinite(wmax)):
        raise InvalidRangeError(f"Frequency bounds must be finite, got wmin={wmin}, wmax={wmax}")
    if wmin <= 0:
        raise InvalidRangeError(f"wmin must be > 0, got {wmin}")
    if wmax <= wmin:
        raise InvalidRangeError(f"wmax must be > wmin, got wmin={wmin}, wmax={wmax}")


def frequency_grid(wmin: float, wmax: float, points: int) -> NDArray:
    """
    Builds a logarithmically spaced frequency grid.

    Args:
        wmin: Minimum angular frequency (rad/s)
        wmax: Maximum angular frequency (rad/s)
        points: Number of grid points

    Returns:
        Array of `points` strictly increasing frequencies from wmin to wmax

    Raises:
        InvalidRangeError: If wmin <= 0, wmax <= wmin, points < 2 or the
            window cannot hold `points` distinct floating point values
    """
    _validate_range(wmin, wmax, points)
    wlog = np.linspace(np.log10(wmin), np.log10(wmax), int(points))
    omega = 10.0 ** wlog
    # Pin the endpoints so they are not perturbed by the log/pow round trip
    omega[0] = wmin
    omega[-1] = wmax
    if np.any(np.diff(omega) <= 0):
        raise InvalidRangeError(
            f"Window [{wmin!r}, {wmax!r}] too narrow for {points} distinct frequencies"
        )
    return omega


def sample_response(
    response: ResponseFunction,
    wmin: float,
    wmax: float,
    points: int
) -> Tuple[NDArray, NDArray, NDArray]:
    """
    Evaluates magnitude and principal phase of G(jω) over a log grid.

    The response is called once per grid point with a scalar argument.

    Args:
        response: Transfer function G(s)
        wmin: Minimum angular frequency (rad/s)
        wmax: Maximum angular frequency (rad/s)
        points: Number of grid points

    Returns:
        Tuple (omega, magnitude, raw_phase):
            - omega: Frequency grid (rad/s)
            - magnitude: |G(jω)|
            - raw_phase: arg G(jω) in (-π, π] (rad)
    """
    omega = frequency_grid(wmin, wmax, points)
    H = np.array([complex(response(1j * w)) for w in omega], dtype=complex)

    magnitude = np.abs(H)
    raw_phase = np.arctan2(H.imag, H.real)

    logger.debug("Sampled G(jw) at %d points in [%g, %g] rad/s", len(omega), wmin, wmax)
    return omega, magnitude, raw_phase


# ---------------------------------------------------------------------------
# Phase unwrapping
# ---------------------------------------------------------------------------

def unwrap_phase(raw_phase: Union[NDArray, list]) -> NDArray:
    """
    Removes artificial 2π jumps from a phase sequence.

    Samples are scanned left to right and every correction is carried over to
    all following samples, so the order of the input matters.

    Args:
        raw_phase: Phase samples (rad), ordered by increasing frequency

    Returns:
        New array with consecutive steps within [-π, π]
    """
    raw = np.asarray(raw_phase, dtype=float)
    unwrapped = raw.copy()
    offset = 0.0

    for i in range(1, len(raw)):
        value = raw[i] + offset
        step = value - unwrapped[i - 1]
        if abs(step) > np.pi:
            shift = 2 * np.pi * np.floor((step + np.pi) / (2 * np.pi))
            offset -= shift
            value -= shift
        unwrapped[i] = value

    return unwrapped


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------

class PhaseInterpolant:
    """
    Piecewise-linear interpolant of the unwrapped phase.

    Attributes:
        omega: Frequency grid (rad/s)
        phase: Unwrapped phase samples (rad)
    """

    def __init__(self, omega: Union[NDArray, list], phase: Union[NDArray, list]) -> None:
        """
        Args:
            omega: Strictly increasing frequency grid (rad/s)
            phase: Unwrapped phase at each grid point (rad)

        Raises:
            ValueError: If shapes differ, fewer than 2 points or grid not increasing
        """
        self.omega = np.asarray(omega, dtype=float)
        self.phase = np.asarray(phase, dtype=float)

        if self.omega.ndim != 1 or self.omega.shape != self.phase.shape:
            raise ValueError("omega and phase must be 1-D arrays of equal length")
        if len(self.omega) < 2:
            raise ValueError("At least 2 samples are required for interpolation")
        if np.any(np.diff(self.omega) <= 0):
            raise ValueError("omega must be strictly increasing")

    @property
    def wmin(self) -> float:
        return float(self.omega[0])

    @property
    def wmax(self) -> float:
        return float(self.omega[-1])

    def interpolate(self, w: Union[float, NDArray]) -> Union[float, NDArray]:
        """
        Interpolated phase at frequency w.

        Args:
            w: Query frequency or array of frequencies (rad/s)

        Returns:
            Phase (rad), scalar for scalar input

        Raises:
            OutOfDomainError: If any w lies outside [wmin, wmax]
        """
        w_arr = np.asarray(w, dtype=float)
        if np.any(w_arr < self.omega[0]) or np.any(w_arr > self.omega[-1]) or np.any(np.isnan(w_arr)):
            raise OutOfDomainError(
                f"Query frequency {w} outside interpolation range [{self.wmin:g}, {self.wmax:g}]"
            )

        result = np.interp(w_arr, self.omega, self.phase)
        if np.ndim(result) == 0:
            return float(result)
        return result

    __call__ = interpolate

    def __repr__(self) -> str:
        return f"PhaseInterpolant({len(self.omega)} points, [{self.wmin:g}, {self.wmax:g}] rad/s)"


# ---------------------------------------------------------------------------
# Root finding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RootResult:
    """Outcome of a bracketed root search."""
    root: float
    tolerance: float
    iterations: int
    function_calls: int


class RootFinder(Protocol):
    """Bracketed scalar root finder."""

    def find_root(
        self,
        f: Callable[[float], float],
        a: float,
        b: float,
        xtol: float,
        rtol: float,
        maxiter: int
    ) -> RootResult:
        ...


class ScipyRootFinder:
    """
    Adapter around a scipy.optimize bracketing solver.

    Attributes:
        solver: Function with the signature of scipy.optimize.brentq
        name: Name used in log and error messages
    """

    def __init__(self, solver: Callable, name: Optional[str] = None) -> None:
        self.solver = solver
        self.name = name if name is not None else solver.__name__

    def find_root(
        self,
        f: Callable[[float], float],
        a: float,
        b: float,
        xtol: float,
        rtol: float,
        maxiter: int
    ) -> RootResult:
        root, info = self.solver(
            f, a, b, xtol=xtol, rtol=rtol, maxiter=maxiter,
            full_output=True, disp=False
        )
        if not info.converged:
            raise ConvergenceError(
                f"{self.name} did not converge in {maxiter} iterations ({info.flag})"
            )
        root = float(root)
        return RootResult(
            root=root,
            tolerance=xtol + rtol * abs(root),
            iterations=int(info.iterations),
            function_calls=int(info.function_calls),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class BrentRootFinder(ScipyRootFinder):
    """Brent's method (scipy.optimize.brentq)."""

    def __init__(self) -> None:
        super().__init__(optimize.brentq, 'brentq')


class BisectionRootFinder(ScipyRootFinder):
    """Bisection (scipy.optimize.bisect)."""

    def __init__(self) -> None:
        super().__init__(optimize.bisect, 'bisect')


_ROOT_FINDERS = {
    'brentq': BrentRootFinder,
    'bisect': BisectionRootFinder,
}


@dataclass(frozen=True)
class SolverConfig:
    """
    Numeric settings of the crossover searches.

    Attributes:
        xtol: Absolute frequency tolerance (rad/s). If None, XTOL_SCALE times
            the width of the search window
        rtol: Relative frequency tolerance
        maxiter: Iteration cap of each root search
        method: Root finder, either 'brentq', 'bisect' or any object
            implementing RootFinder
    """
    xtol: Optional[float] = None
    rtol: float = 4 * np.finfo(float).eps
    maxiter: int = 100
    method: Union[str, RootFinder] = 'brentq'

    def __post_init__(self) -> None:
        if not isinstance(self.method, str):
            if not callable(getattr(self.method, 'find_root', None)):
                raise ValueError(f"Root finder {self.method!r} has no find_root method")
        elif self.method not in _ROOT_FINDERS:
            raise ValueError(
                f"Root finding method '{self.method}' not supported. "
                f"Valid methods: {', '.join(repr(m) for m in _ROOT_FINDERS)}"
            )
        if self.xtol is not None and not self.xtol > 0:
            raise ValueError(f"xtol must be > 0, got {self.xtol}")
        if self.rtol < 4 * np.finfo(float).eps:
            raise ValueError(f"rtol too small, got {self.rtol}")
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be >= 1, got {self.maxiter}")

    def resolve_xtol(self, wmin: float, wmax: float) -> float:
        """Effective absolute tolerance for the window [wmin, wmax]."""
        if self.xtol is not None:
            return self.xtol
        return XTOL_SCALE * (wmax - wmin)

    def root_finder(self) -> RootFinder:
        if isinstance(self.method, str):
            return _ROOT_FINDERS[self.method]()
        return self.method


# ---------------------------------------------------------------------------
# Crossover search
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrossoverPoint:
    """
    A characteristic point of the frequency response.

    Attributes:
        frequency: Crossover frequency (rad/s)
        value: RA at the phase crossover, or phase (rad) at the gain crossover
        tolerance: Achieved frequency tolerance of the root search (rad/s)
        iterations: Root finder iterations
    """
    frequency: float
    value: float
    tolerance: float = 0.0
    iterations: int = 0


class CrossoverSolver:
    """
    Finds the phase crossover (φ = -180°) and gain crossover (RA = 1).

    Both searches are bracketed over [wmin, wmax] and share no mutable state,
    so they may run in any order or concurrently. When the window contains
    several crossings the root returned is whichever one the root finder
    converges to, not necessarily the lowest frequency one; an even number of
    crossings shows no sign change and is reported as NoRootInRangeError.

    Attributes:
        response: Transfer function G(s)
        interpolant: Unwrapped phase interpolant
        wmin: Lower bound of the search (rad/s)
        wmax: Upper bound of the search (rad/s)
        config: Numeric settings
    """

    def __init__(
        self,
        response: ResponseFunction,
        interpolant: PhaseInterpolant,
        wmin: Optional[float] = None,
        wmax: Optional[float] = None,
        config: Optional[SolverConfig] = None
    ) -> None:
        self.response = response
        self.interpolant = interpolant
        self.wmin = interpolant.wmin if wmin is None else float(wmin)
        self.wmax = interpolant.wmax if wmax is None else float(wmax)
        self.config = config if config is not None else SolverConfig()

        if not interpolant.wmin <= self.wmin < self.wmax <= interpolant.wmax:
            raise InvalidRangeError(
                f"Search window [{self.wmin:g}, {self.wmax:g}] must lie inside "
                f"the interpolation range [{interpolant.wmin:g}, {interpolant.wmax:g}]"
            )

    def magnitude(self, w: float) -> float:
        """RA(ω) = |G(jω)|, evaluated directly from the response."""
        return float(abs(self.response(1j * w)))

    def _solve(self, f: Callable[[float], float], kind: str) -> RootResult:
        fa = f(self.wmin)
        fb = f(self.wmax)
        if fa == 0:
            return RootResult(self.wmin, 0.0, 0, 2)
        if fb == 0:
            return RootResult(self.wmax, 0.0, 0, 2)
        if np.sign(fa) == np.sign(fb):
            raise NoRootInRangeError(kind, self.wmin, self.wmax)

        cfg = self.config
        finder = cfg.root_finder()
        result = finder.find_root(
            f, self.wmin, self.wmax,
            xtol=cfg.resolve_xtol(self.wmin, self.wmax),
            rtol=cfg.rtol,
            maxiter=cfg.maxiter,
        )
        logger.debug(
            "%s crossover: %r converged in %d iterations (%d calls)",
            kind, finder, result.iterations, result.function_calls
        )
        return result

    def find_phase_crossover(self) -> CrossoverPoint:
        """
        Solves φ(ω) + π = 0 on the interpolated phase.

        Returns:
            CrossoverPoint(wco, RAco), RAco = |G(j·wco)|

        Raises:
            NoRootInRangeError: If the phase does not cross -180° in the window
        """
        result = self._solve(lambda w: self.interpolant(w) + np.pi, 'phase')
        wco = result.root
        RAco = self.magnitude(wco)
        logger.info("Phase crossover: wco = %.6g rad/s, RAco = %.6g", wco, RAco)
        return CrossoverPoint(wco, RAco, result.tolerance, result.iterations)

    def find_gain_crossover(self) -> CrossoverPoint:
        """
        Solves |G(jω)| - 1 = 0.

        Returns:
            CrossoverPoint(w1, phi1), phi1 the interpolated phase (rad)

        Raises:
            NoRootInRangeError: If the magnitude does not cross 1 in the window
        """
        result = self._solve(lambda w: self.magnitude(w) - 1.0, 'gain')
        w1 = result.root
        phi1 = float(self.interpolant(w1))
        logger.info("Gain crossover: w1 = %.6g rad/s, phi1 = %.6g rad", w1, phi1)
        return CrossoverPoint(w1, phi1, result.tolerance, result.iterations)


# ---------------------------------------------------------------------------
# Result and pipeline
# ---------------------------------------------------------------------------

def _readonly(values: NDArray) -> NDArray:
    arr = np.array(values, dtype=float)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True, eq=False)
class BodeAnalysisResult:
    """
    Sampled curves and crossover points of a Bode analysis.

    Attributes:
        omega: Frequency grid (rad/s)
        magnitude: RA = |G(jω)| on the grid
        phase: Unwrapped phase on the grid (rad)
        phase_crossover: (wco, RAco), or None
        gain_crossover: (w1, phi1), or None
    """
    omega: NDArray
    magnitude: NDArray
    phase: NDArray
    phase_crossover: Optional[CrossoverPoint] = None
    gain_crossover: Optional[CrossoverPoint] = None

    def __post_init__(self) -> None:
        for name in ('omega', 'magnitude', 'phase'):
            object.__setattr__(self, name, _readonly(getattr(self, name)))
        if not self.omega.shape == self.magnitude.shape == self.phase.shape:
            raise ValueError("omega, magnitude and phase must have the same shape")

    @property
    def phase_deg(self) -> NDArray:
        """Unwrapped phase in degrees."""
        return np.degrees(self.phase)

    @property
    def wco(self) -> Optional[float]:
        return None if self.phase_crossover is None else self.phase_crossover.frequency

    @property
    def RAco(self) -> Optional[float]:
        return None if self.phase_crossover is None else self.phase_crossover.value

    @property
    def w1(self) -> Optional[float]:
        return None if self.gain_crossover is None else self.gain_crossover.frequency

    @property
    def phi1(self) -> Optional[float]:
        return None if self.gain_crossover is None else self.gain_crossover.value

    def __repr__(self) -> str:
        return (
            f"BodeAnalysisResult(\n"
            f"  omega: {len(self.omega)} points in [{self.omega[0]:g}, {self.omega[-1]:g}] rad/s\n"
            f"  wco={self.wco}, RAco={self.RAco}\n"
            f"  w1={self.w1}, phi1={self.phi1}\n"
            f")"
        )


def _search(search: Callable[[], CrossoverPoint], strict: bool) -> Optional[CrossoverPoint]:
    try:
        return search()
    except NoRootInRangeError as exc:
        if strict:
            raise
        logger.warning("%s", exc)
        return None


def analyze(
    Gol: ResponseFunction,
    wmin: float = 1e-1,
    wmax: float = 1e1,
    points: int = 100,
    co: bool = False,
    ra1: bool = False,
    config: Optional[SolverConfig] = None,
    strict: bool = False,
    concurrent: bool = False
) -> BodeAnalysisResult:
    """
    Frequency response analysis of the open-loop transfer function Gol.

    Args:
        Gol: Open-loop transfer function of s
        wmin: Minimum angular frequency (rad/s)
        wmax: Maximum angular frequency (rad/s)
        points: Number of grid points
        co: Compute the phase crossover (wco, RAco)
        ra1: Compute the gain crossover (w1, phi1)
        config: Root finder settings [default: SolverConfig()]
        strict: If True, a missing crossover raises NoRootInRangeError
            instead of being left as None
        concurrent: Run both crossover searches on separate threads
            (Gol must be thread safe)

    Returns:
        BodeAnalysisResult

    Raises:
        InvalidRangeError: If wmin/wmax/points are invalid
        NoRootInRangeError: If strict and a requested crossover is missing
        ConvergenceError: If a root search hits config.maxiter

    Example:
        >>> out = analyze(lambda s: 20*(s+1)/s/(s+5)/(s**2+2*s+10),
        ...               wmax=10, co=True, ra1=True)
        >>> out.wco, out.RAco, out.w1, out.phi1
    """
    omega, magnitude, raw_phase = sample_response(Gol, wmin, wmax, points)
    phase = unwrap_phase(raw_phase)
    interpolant = PhaseInterpolant(omega, phase)
    solver = CrossoverSolver(Gol, interpolant, wmin, wmax, config)

    searches = {}
    if co:
        searches['phase'] = solver.find_phase_crossover
    if ra1:
        searches['gain'] = solver.find_gain_crossover

    if concurrent and len(searches) > 1:
        with ThreadPoolExecutor(max_workers=len(searches)) as pool:
            futures = {kind: pool.submit(_search, fn, strict) for kind, fn in searches.items()}
            found = {kind: future.result() for kind, future in futures.items()}
    else:
        found = {kind: _search(fn, strict) for kind, fn in searches.items()}

    return BodeAnalysisResult(
        omega=omega,
        magnitude=magnitude,
        phase=phase,
        phase_crossover=found.get('phase'),
        gain_crossover=found.get('gain'),
    )


bode = analyze


# ---------------------------------------------------------------------------
# Plotting
# ---------------------------------------------------------------------------

def plot_bode(
    result: BodeAnalysisResult,
    ra_label: str = 'RA',
    figsize: Tuple[float, float] = (10, 8),
    show: bool = True
) -> Figure:
    """
    Plots the Bode diagram of an analysis result.

    Crossover points present in the result are marked with guide lines from
    the left edge of each panel; absent ones are simply not drawn.

    Args:
        result: Output of analyze()
        ra_label: Label of the magnitude axis
        figsize: Figure size (width, height)
        show: Call plt.show() after drawing

    Returns:
        The matplotlib Figure
    """
    omega = result.omega
    wmin = omega[0]
    phase_deg = result.phase_deg

    fig, (ax1, ax2) = plt.subplots(2, 1, figsize=figsize, sharex=True)

    # Magnitude diagram
    ax1.loglog(omega, result.magnitude, 'b-', linewidth=2)
    ax1.grid(True, which='both', alpha=0.3)
    ax1.set_ylabel(ra_label, fontsize=11)
    ra_bottom = ax1.get_ylim()[0]

    # Phase diagram
    ax2.semilogx(omega, phase_deg, 'b-', linewidth=2)
    ax2.grid(True, which='both', alpha=0.3)
    ax2.set_xlabel('ω (rad/s)', fontsize=11)
    ax2.set_ylabel('φ (degrees)', fontsize=11)
    phi_bottom = ax2.get_ylim()[0]

    if result.phase_crossover is not None:
        wco, RAco = result.wco, result.RAco
        phico = np.degrees(np.interp(wco, omega, result.phase))
        ax1.plot([wmin, wco, wco], [RAco, RAco, ra_bottom], color='red', linewidth=1.5)
        ax1.text(wco, RAco, r' $\omega_{co}, RA_{co}$', fontsize=10, ha='left')
        ax2.plot([wmin, wco, wco], [phico, phico, phi_bottom], color='red', linewidth=1.5)
        ax2.text(wco, phico, r' $\omega_{co}$, -180°', fontsize=10, ha='left')

    if result.gain_crossover is not None:
        w1, phi1 = result.w1, np.degrees(result.phi1)
        ax1.plot([wmin, w1, w1], [1.0, 1.0, ra_bottom], color='lime', linewidth=1.5)
        ax1.text(w1, 1.0, r' $\omega_1, 1$', fontsize=10, ha='left')
        ax2.plot([wmin, w1, w1], [phi1, phi1, phi_bottom], color='lime', linewidth=1.5)
        ax2.text(w1, phi1, r' $\omega_1, \phi_1$', fontsize=10, ha='left')

    # Keep the guide lines from rescaling the axes
    ax1.set_ylim(bottom=ra_bottom)
    ax2.set_ylim(bottom=phi_bottom)

    plt.tight_layout()
    if show:
        plt.show()
    return fig
