"""
MPM (Material Point Method) Core
Provides the particle update cycle, background cells and mesh, and constitutive models
(Bingham viscoplastic, linear elastic) for explicit MPM analyses.

The data-parallel Taichi stress kernel lives in mpmcore.kernels and is imported
on demand so the numpy path works without initializing Taichi.
"""
from .config import (
    MPMConfig,
    MeshConfig,
    MaterialConfig,
    ParticlesConfig,
    TimeConfig,
    AnalysisConfig,
    OutputConfig,
    VelocityConstraintConfig,
)
from .materials import (
    Material,
    BinghamMaterial,
    BinghamParameters,
    LinearElasticMaterial,
    LinearElasticParameters,
    MATERIAL_TYPES,
    create_material,
)
from .cell import Cell, LagrangeElement
from .mesh import Mesh, NodeArena
from .particle import Particle, ParticleRecord, ParticleStage
from .mpm_solver import MPMSolver, StageFailure, StepReport
from .stability import (
    compute_cfl_timestep,
    compute_viscous_timestep,
    check_timestep_constraints,
    validate_config,
)
from .exceptions import (
    MPMError,
    ConfigurationError,
    MaterialError,
    StabilityError,
    UnsupportedOperationError,
    UnsupportedDimensionError,
    LocationError,
    UnassignedMaterialError,
    StageOrderError,
    MeshInvariantError,
    RECOVERABLE_ERRORS,
)

__all__ = [
    # Config
    'MPMConfig',
    'MeshConfig',
    'MaterialConfig',
    'ParticlesConfig',
    'TimeConfig',
    'AnalysisConfig',
    'OutputConfig',
    'VelocityConstraintConfig',
    # Materials
    'Material',
    'BinghamMaterial',
    'BinghamParameters',
    'LinearElasticMaterial',
    'LinearElasticParameters',
    'MATERIAL_TYPES',
    'create_material',
    # Mesh
    'Cell',
    'LagrangeElement',
    'Mesh',
    'NodeArena',
    # Particles and solver
    'Particle',
    'ParticleRecord',
    'ParticleStage',
    'MPMSolver',
    'StageFailure',
    'StepReport',
    # Stability
    'compute_cfl_timestep',
    'compute_viscous_timestep',
    'check_timestep_constraints',
    'validate_config',
    # Exceptions
    'MPMError',
    'ConfigurationError',
    'MaterialError',
    'StabilityError',
    'UnsupportedOperationError',
    'UnsupportedDimensionError',
    'LocationError',
    'UnassignedMaterialError',
    'StageOrderError',
    'MeshInvariantError',
    'RECOVERABLE_ERRORS',
]
