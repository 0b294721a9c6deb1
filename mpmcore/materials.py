"""
Constitutive Models for MPM particles
Implements the Bingham viscoplastic model and an isotropic linear-elastic model
behind a shared capability interface.

Capabilities:
- "elastic_tensor": elastic_tensor() returns a 6x6 matrix
- "stress": compute_stress(stress, dstrain) works without particle context
- "context_stress": compute_stress(stress, dstrain, particle) works with particle context

Calling an operation outside a variant's capabilities raises UnsupportedOperationError.
"""
import logging
import math
from dataclasses import dataclass, fields
from numbers import Real
from typing import Dict, FrozenSet, Mapping, Optional, Type

import numpy as np

from .exceptions import (
    ConfigurationError,
    MaterialError,
    UnsupportedDimensionError,
    UnsupportedOperationError,
)
from .tensor import DIRAC_DELTA, as_voigt, mean_stress, volumetric, zero_voigt

logger = logging.getLogger(__name__)

# Floor applied to the critical shear rate before it is squared
CRITICAL_SHEAR_RATE_FLOOR = 1e-15


def _read_number(parameters: Mapping, key: str) -> float:
    """Fetch a required numeric parameter, naming the key on failure."""
    if key not in parameters:
        raise ConfigurationError(f"Material parameter '{key}' is missing")
    value = parameters[key]
    # bool is a Real subclass but never a valid material constant
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ConfigurationError(
            f"Material parameter '{key}' must be numeric, got {type(value).__name__}"
        )
    value = float(value)
    if not math.isfinite(value):
        raise ConfigurationError(f"Material parameter '{key}' must be finite, got {value}")
    return value


@dataclass(frozen=True)
class LinearElasticParameters:
    """Isotropic linear elasticity"""
    density: float
    youngs_modulus: float
    poisson_ratio: float

    @property
    def bulk_modulus(self) -> float:
        return self.youngs_modulus / (3.0 * (1.0 - 2.0 * self.poisson_ratio))

    @property
    def shear_modulus(self) -> float:
        return self.youngs_modulus / (2.0 * (1.0 + self.poisson_ratio))


@dataclass(frozen=True)
class BinghamParameters(LinearElasticParameters):
    """Bingham viscoplastic fluid"""
    tau0: float  # Yield stress
    mu: float  # Plastic viscosity
    critical_shear_rate: float  # Shear rate below which the material is rigid


def _check_elastic_ranges(values: Dict[str, float]) -> None:
    if values['density'] <= 0.0:
        raise ConfigurationError(f"Material parameter 'density' must be positive, got {values['density']}")
    if values['youngs_modulus'] <= 0.0:
        raise ConfigurationError(
            f"Material parameter 'youngs_modulus' must be positive, got {values['youngs_modulus']}"
        )
    if not -1.0 < values['poisson_ratio'] < 0.5:
        raise ConfigurationError(
            f"Material parameter 'poisson_ratio' must lie in (-1, 0.5), got {values['poisson_ratio']}"
        )


class Material:
    """
    Base class of every constitutive model

    A material is created unconfigured and becomes usable after a single
    successful configure() call. Its parameters are immutable afterwards.
    """

    capabilities: FrozenSet[str] = frozenset()
    parameter_type: Type = LinearElasticParameters

    def __init__(self, material_id: int, dimension: int):
        self.id = material_id
        self.dimension = dimension
        self._params = None

    @property
    def is_configured(self) -> bool:
        return self._params is not None

    @property
    def params(self):
        if self._params is None:
            raise ConfigurationError(f"Material {self.id} has not been configured")
        return self._params

    @property
    def requires_context(self) -> bool:
        return "stress" not in self.capabilities

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def property(self, name: str) -> float:
        """Return a configured parameter by name (e.g. 'density')"""
        params = self.params
        if not hasattr(params, name):
            raise ConfigurationError(f"Material {self.id} has no property '{name}'")
        return getattr(params, name)

    def configure(self, parameters: Mapping) -> None:
        """
        Parse and validate a key -> value mapping of material parameters

        Args:
            parameters: Mapping containing every field of parameter_type

        Raises:
            ConfigurationError: missing, non-numeric or out-of-range parameter.
                The material stays unconfigured.
        """
        if self._params is not None:
            raise ConfigurationError(f"Material {self.id} is already configured")
        if not isinstance(parameters, Mapping):
            raise ConfigurationError(
                f"Material parameters must be a mapping, got {type(parameters).__name__}"
            )
        values = {f.name: _read_number(parameters, f.name) for f in fields(self.parameter_type)}
        self._validate(values)
        self._params = self.parameter_type(**values)
        logger.debug("Configured %s %d with %s", type(self).__name__, self.id, self._params)

    def _validate(self, values: Dict[str, float]) -> None:
        _check_elastic_ranges(values)

    def elastic_tensor(self) -> np.ndarray:
        raise UnsupportedOperationError(f"{type(self).__name__} does not provide an elastic tensor")

    def compute_stress(self, stress, dstrain, particle=None, phase: int = 0) -> np.ndarray:
        raise UnsupportedOperationError(f"{type(self).__name__} does not compute stress")


class LinearElasticMaterial(Material):
    """Isotropic linear elasticity: sigma_new = sigma + D : dstrain"""

    capabilities = frozenset({"elastic_tensor", "stress", "context_stress"})
    parameter_type = LinearElasticParameters

    def elastic_tensor(self) -> np.ndarray:
        params = self.params
        G = params.shear_modulus
        a1 = params.bulk_modulus + 4.0 / 3.0 * G
        a2 = params.bulk_modulus - 2.0 / 3.0 * G

        de = np.zeros((6, 6))
        de[:3, :3] = a2
        de[0, 0] = de[1, 1] = de[2, 2] = a1
        de[3, 3] = de[4, 4] = de[5, 5] = G
        return de

    def compute_stress(self, stress, dstrain, particle=None, phase: int = 0) -> np.ndarray:
        return as_voigt(stress) + self.elastic_tensor() @ as_voigt(dstrain)


class BinghamMaterial(Material):
    """
    Bingham viscoplastic model

    Rigid while the shear rate stays at or below the critical shear rate, then
    flows with an apparent viscosity 2 * (tau0 / sqrt(gamma) + mu). The pressure
    is updated elastically with the bulk modulus. The deviatoric stress depends
    on the live strain rate, so stress can only be computed with particle context.
    """

    capabilities = frozenset({"context_stress"})
    parameter_type = BinghamParameters

    def _validate(self, values: Dict[str, float]) -> None:
        _check_elastic_ranges(values)
        if values['tau0'] < 0.0:
            raise ConfigurationError(f"Material parameter 'tau0' must be non-negative, got {values['tau0']}")
        if values['critical_shear_rate'] < 0.0:
            raise ConfigurationError(
                f"Material parameter 'critical_shear_rate' must be non-negative, "
                f"got {values['critical_shear_rate']}"
            )

    def compute_stress(self, stress, dstrain, particle=None, phase: int = 0) -> np.ndarray:
        """
        Compute the updated stress

        Args:
            stress: (6,) stress at the start of the step
            dstrain: (6,) strain increment of the step
            particle: object providing strain_rate(phase) -> (6,) array
            phase: phase index used to read the strain rate

        Returns:
            updated_stress: (6,) stress at the end of the step

        Raises:
            UnsupportedOperationError: no particle context given
            UnsupportedDimensionError: dimension is not 2 or 3
            ConfigurationError: material not configured
        """
        if particle is None:
            raise UnsupportedOperationError(
                "BinghamMaterial needs the particle strain rate; call compute_stress with a particle"
            )
        params = self.params
        stress = as_voigt(stress)
        dstrain = as_voigt(dstrain)
        strain_rate = as_voigt(particle.strain_rate(phase))

        # Pressure update (same as a compressible Newtonian fluid)
        pressure_old = mean_stress(stress)
        pressure_increment = params.bulk_modulus * volumetric(dstrain)
        pressure_new = pressure_old + pressure_increment

        critical_shear_rate = max(params.critical_shear_rate, CRITICAL_SHEAR_RATE_FLOOR)
        # Dot product over all six Voigt components, kept as is for compatibility
        shear_rate = 2.0 * float(strain_rate @ strain_rate)

        apparent_viscosity = 0.0
        if shear_rate > critical_shear_rate * critical_shear_rate:
            apparent_viscosity = 2.0 * (params.tau0 / math.sqrt(shear_rate) + params.mu)

        tau = apparent_viscosity * strain_rate

        # von Mises check; snap near-yield noise to the rigid state
        invariant2 = float(tau @ tau)
        if invariant2 < 2.0 * params.tau0 * params.tau0:
            tau = zero_voigt()

        if self.dimension == 3:
            return pressure_new * DIRAC_DELTA + tau
        if self.dimension == 2:
            updated_stress = zero_voigt()
            updated_stress[0] = tau[0] + pressure_new
            updated_stress[1] = tau[1] + pressure_new
            updated_stress[3] = tau[3]
            return updated_stress
        raise UnsupportedDimensionError(
            f"BinghamMaterial supports dimensions 2 and 3, got {self.dimension}"
        )


MATERIAL_TYPES: Dict[str, Type[Material]] = {
    'Bingham': BinghamMaterial,
    'LinearElastic': LinearElasticMaterial,
}


def create_material(kind: str, material_id: int, dimension: int,
                    parameters: Optional[Mapping] = None) -> Material:
    """
    Create a material of a registered type, configured when parameters are given

    Raises:
        MaterialError: unknown material type
        ConfigurationError: invalid parameters
    """
    try:
        material_cls = MATERIAL_TYPES[kind]
    except KeyError:
        raise MaterialError(
            f"Unknown material type '{kind}', expected one of {sorted(MATERIAL_TYPES)}"
        ) from None
    material = material_cls(material_id, dimension)
    if parameters is not None:
        material.configure(parameters)
    return material
