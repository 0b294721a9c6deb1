"""
MPM Core Custom Exceptions

Provides a structured exception hierarchy for material, particle and mesh errors.
All MPM-specific exceptions inherit from MPMError for easy catching.

Every class except MeshInvariantError is recoverable: it describes a failure of
one call on one particle and is reported by the solver without stopping the run.
MeshInvariantError means the membership bookkeeping is corrupted and aborts.
"""


class MPMError(RuntimeError):
    """Base exception for all MPM errors.

    Catch this to handle any MPM-related error generically.
    """
    pass


class ConfigurationError(MPMError):
    """Configuration or user input validation error.

    Raised when:
    - A required material parameter is missing or not numeric
    - A parameter is outside its physical range
    - A material is used before it has been configured
    """
    pass


class MaterialError(ConfigurationError):
    """Material definition error.

    Raised when:
    - An unknown material type is requested
    - A material id is referenced but not registered
    """
    pass


class StabilityError(ConfigurationError):
    """Numerical stability constraint violation.

    Raised when:
    - Time step exceeds the CFL or viscous limit in strict mode
    """
    pass


class UnsupportedOperationError(MPMError):
    """A material variant does not implement the requested capability.

    Raised when:
    - elastic_tensor() is called on a rate-dependent material
    - compute_stress() is called without particle context on a material that needs it
    """
    pass


class UnsupportedDimensionError(MPMError):
    """Spatial dimension outside {2, 3}."""
    pass


class LocationError(MPMError):
    """Particle coordinates cannot be resolved in a cell.

    Raised when:
    - The particle is not bound to any cell
    - The inverse mapping to local coordinates does not converge
    """
    pass


class UnassignedMaterialError(MPMError):
    """Mass or stress requested on a particle without a material."""
    pass


class StageOrderError(MPMError):
    """A particle operation was called before its prerequisite stage succeeded."""
    pass


class MeshInvariantError(MPMError):
    """Cell membership bookkeeping is corrupted (programming error, not recoverable)."""
    pass


RECOVERABLE_ERRORS = (
    ConfigurationError,
    UnsupportedOperationError,
    UnsupportedDimensionError,
    LocationError,
    UnassignedMaterialError,
    StageOrderError,
)
