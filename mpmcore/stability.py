"""
Stability Checks for the explicit MPM solver
Provides parameter validation and time step constraint checks
"""
import logging
from typing import List, Tuple

import numpy as np

from .config import MPMConfig
from .exceptions import ConfigurationError
from .materials import BinghamMaterial, create_material

logger = logging.getLogger(__name__)


def compute_cfl_timestep(dx: float, E: float, rho: float, safety_factor: float = 0.5) -> float:
    """
    Compute CFL-limited time step for elastic wave propagation

    dt <= safety_factor * dx / c_wave
    where c_wave = sqrt(E / rho) is the wave speed
    """
    c_wave = np.sqrt(E / rho)
    return safety_factor * dx / c_wave


def compute_viscous_timestep(dx: float, mu: float, rho: float, safety_factor: float = 0.5) -> float:
    """
    Compute time step constraint for explicit viscous diffusion

    dt <= safety_factor * rho * dx^2 / mu
    """
    if mu <= 0:
        return float('inf')
    return safety_factor * rho * dx ** 2 / mu


def minimum_cell_size(config: MPMConfig) -> float:
    """Smallest edge of the cell bounding boxes"""
    nodes = np.asarray(config.mesh.nodes, dtype=np.float64)
    sizes = [
        float(np.min(np.ptp(nodes[list(cell)], axis=0)))
        for cell in config.mesh.cells
    ]
    if not sizes:
        raise ConfigurationError("Mesh has no cells")
    return min(sizes)


def check_timestep_constraints(config: MPMConfig) -> Tuple[bool, str]:
    """
    Check if time step satisfies all stability constraints

    Args:
        config: MPM configuration

    Returns:
        is_valid: True if time step is valid
        message: Diagnostic message with recommendations
    """
    dt = config.time.dt
    dx = minimum_cell_size(config)

    dt_cfl = float('inf')
    dt_visc = float('inf')
    for m in config.materials:
        material = create_material(m.type, m.id, config.mesh.dimension, m.parameters)
        rho = material.property('density')
        dt_cfl = min(dt_cfl, compute_cfl_timestep(dx, material.property('youngs_modulus'), rho))
        if isinstance(material, BinghamMaterial):
            dt_visc = min(dt_visc, compute_viscous_timestep(dx, material.property('mu'), rho))

    dt_min = min(dt_cfl, dt_visc)

    messages = []
    messages.append(f"Time step constraints:")
    messages.append(f"  Current dt: {dt:.3e} s")
    messages.append(f"  Smallest cell size: {dx:.3e} m")
    if dt_cfl < float('inf'):
        messages.append(f"  CFL limit (elastic): {dt_cfl:.3e} s")
    if dt_visc < float('inf'):
        messages.append(f"  Viscous limit: {dt_visc:.3e} s")

    if dt_min == float('inf'):
        messages.append("  No material defined, time step is unconstrained")
        return True, "\n".join(messages)

    messages.append(f"  Recommended dt: {dt_min:.3e} s")

    if dt > dt_min:
        messages.append(f"⚠ WARNING: Time step exceeds stability limit by {dt/dt_min:.2f}x")
        return False, "\n".join(messages)
    messages.append(f"✓ Time step is within stability limits ({dt/dt_min:.2f}x of limit)")
    return True, "\n".join(messages)


def validate_config(config: MPMConfig) -> Tuple[bool, List[str]]:
    """
    Validate complete MPM configuration

    Args:
        config: MPM configuration

    Returns:
        is_valid: True if configuration is valid
        messages: List of diagnostic messages
    """
    messages = []
    is_valid = True

    # 1. Materials
    material_ok = True
    for m in config.materials:
        try:
            create_material(m.type, m.id, config.mesh.dimension, m.parameters)
            messages.append(f"✓ Material {m.id} ({m.type}) parameters are valid")
        except ConfigurationError as e:
            is_valid = material_ok = False
            messages.append(f"✗ Material {m.id} ({m.type}): {e}")
    if not config.materials:
        is_valid = material_ok = False
        messages.append("✗ No material defined")

    # 2. Mesh
    if config.mesh.dimension not in (2, 3):
        is_valid = False
        messages.append(f"✗ Unsupported dimension: {config.mesh.dimension}")
    elif not config.mesh.cells:
        is_valid = False
        messages.append("✗ Mesh has no cells")
    else:
        messages.append(f"✓ Mesh: {len(config.mesh.nodes)} nodes, {len(config.mesh.cells)} cells")

    # 3. Gravity
    if len(config.analysis.gravity) != config.mesh.dimension:
        is_valid = False
        messages.append(
            f"✗ Gravity has {len(config.analysis.gravity)} components, mesh is {config.mesh.dimension}D"
        )

    # 4. Time step (needs valid materials and a mesh)
    if material_ok and config.mesh.cells and config.mesh.dimension in (2, 3):
        dt_valid, dt_msg = check_timestep_constraints(config)
        if not dt_valid:
            is_valid = False
            messages.append(f"✗ Time step constraint check failed")
        else:
            messages.append(f"✓ Time step constraint check passed")
        messages.append(dt_msg)

    for msg in messages:
        logger.debug(msg)

    return is_valid, messages
