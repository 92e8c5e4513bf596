import dataclasses
from dataclasses import dataclass
from typing import Literal

from meeg_BEM.quadrature import AdaptiveIntegrator, Integrator

QuadraturePolicy = Literal["fixed", "adaptive"]
KernelVariant = Literal["optimized", "reference"]

# Hand-tuned defaults; no derivation is claimed for any mesh density.
DEFAULT_GAUSS_ORDER = 3
DEFAULT_ADAPTIVE_TOLERANCE = 0.005
DEFAULT_ADAPTIVE_MAX_DEPTH = 10


@dataclass
class AssemblyConfig:
    """
    Options of one assembly call.

    Attributes:
        gauss_order: Gaussian order (order**2 points per triangle) used when
            the driver is not given an explicit order.
        lhs_quadrature: Quadrature policy of the S, D and N operators.
        rhs_quadrature: Quadrature policy of the dipole right-hand sides.
        tolerance: Absolute error tolerance of the adaptive integrator.
        max_depth: Maximum subdivision depth of the adaptive integrator.
        operator_n: "optimized" uses the next - prev chord of the incident
            triangles, "reference" the projected altitudes.
        operator_d: "optimized" integrates triangle pairs and writes three
            columns at once, "reference" integrates per (triangle, point).
        workers: Threads used for the row loop (1 runs in the caller).
        verbose: Show tqdm progress bars.
    """
    gauss_order: int = DEFAULT_GAUSS_ORDER
    lhs_quadrature: QuadraturePolicy = "fixed"
    rhs_quadrature: QuadraturePolicy = "adaptive"
    tolerance: float = DEFAULT_ADAPTIVE_TOLERANCE
    max_depth: int = DEFAULT_ADAPTIVE_MAX_DEPTH
    operator_n: KernelVariant = "optimized"
    operator_d: KernelVariant = "optimized"
    workers: int = 1
    verbose: bool = False

    def __post_init__(self):
        if self.gauss_order < 1:
            raise ValueError("gauss_order must be at least 1.")
        for name in ("lhs_quadrature", "rhs_quadrature"):
            if getattr(self, name) not in ("fixed", "adaptive"):
                raise ValueError(f"{name} must be 'fixed' or 'adaptive', "
                                 f"got {getattr(self, name)!r}.")
        for name in ("operator_n", "operator_d"):
            if getattr(self, name) not in ("optimized", "reference"):
                raise ValueError(f"{name} must be 'optimized' or "
                                 f"'reference', got {getattr(self, name)!r}.")
        if self.tolerance <= 0:
            raise ValueError("tolerance must be positive.")
        if self.max_depth < 1:
            raise ValueError("max_depth must be at least 1.")
        if self.workers < 1:
            raise ValueError("workers must be at least 1.")

    def make_integrator(self,
                        policy: QuadraturePolicy | None = None,
                        order: int | None = None) -> Integrator:
        """
        Build a fresh integrator. Every worker task gets its own instance.

        Args:
            policy: "fixed" or "adaptive"; defaults to ``lhs_quadrature``.
            order: Gaussian order; defaults to ``gauss_order``.
        """
        policy = self.lhs_quadrature if policy is None else policy
        order = self.gauss_order if order is None else order
        if policy == "adaptive":
            return AdaptiveIntegrator(self.tolerance, order, self.max_depth)
        return Integrator(order)


def resolve_config(config: AssemblyConfig | None,
                   gauss_order: int | None = None) -> AssemblyConfig:
    """Default config, with ``gauss_order`` overriding the configured
    order when given."""
    config = AssemblyConfig() if config is None else config
    if gauss_order is not None and gauss_order != config.gauss_order:
        config = dataclasses.replace(config, gauss_order=gauss_order)
    return config
