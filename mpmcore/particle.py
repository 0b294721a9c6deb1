"""
Material point (particle) state and its per-step operations

A particle holds weak references to its cell and material; the mesh and the
solver's material registry own them. Every mechanical field is changed only
through the operations below, which the solver calls in stage order.
"""
from __future__ import annotations

import enum
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import numpy as np

from .exceptions import (
    ConfigurationError,
    LocationError,
    StageOrderError,
    UnassignedMaterialError,
)
from .tensor import VOIGT_SIZE, as_voigt, check_dimension, voigt_to_reduced, volumetric

logger = logging.getLogger(__name__)


class ParticleStage(enum.IntEnum):
    """Progress of a particle through one time step"""
    UNLOCATED = 0
    LOCATED = 1
    SHAPEFN_COMPUTED = 2
    STRAIN_COMPUTED = 3
    STRESS_COMPUTED = 4
    FORCES_MAPPED = 5
    POSITION_UPDATED = 6


@dataclass
class ParticleRecord:
    """Restart record of one particle; per-phase arrays are indexed [phase, ...]"""
    id: int
    coordinates: np.ndarray
    velocity: np.ndarray
    stress: np.ndarray
    strain: np.ndarray
    volume: float
    mass: np.ndarray
    status: bool = True
    material_id: Optional[int] = None
    cell_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': int(self.id),
            'coordinates': np.asarray(self.coordinates).tolist(),
            'velocity': np.asarray(self.velocity).tolist(),
            'stress': np.asarray(self.stress).tolist(),
            'strain': np.asarray(self.strain).tolist(),
            'volume': float(self.volume),
            'mass': np.asarray(self.mass).tolist(),
            'status': bool(self.status),
            'material_id': self.material_id,
            'cell_id': self.cell_id,
        }

    @classmethod
    def from_dict(cls, record: Mapping) -> 'ParticleRecord':
        """
        Raises:
            ConfigurationError: a field is missing or not numeric
        """
        try:
            velocity = np.atleast_2d(_as_array('velocity', record['velocity']))
            mass = record.get('mass', np.zeros(len(velocity)))
            return cls(
                id=_as_number('id', record['id'], int),
                coordinates=_as_array('coordinates', record['coordinates']),
                velocity=velocity,
                stress=np.atleast_2d(_as_array('stress', record['stress'])),
                strain=np.atleast_2d(_as_array('strain', record['strain'])),
                volume=_as_number('volume', record['volume'], float),
                mass=np.atleast_1d(_as_array('mass', mass)),
                status=bool(record.get('status', True)),
                material_id=_optional_id(record, 'material_id'),
                cell_id=_optional_id(record, 'cell_id'),
            )
        except KeyError as e:
            raise ConfigurationError(f"Particle record is missing field {e.args[0]!r}") from None


def _as_array(name: str, value, shape=None) -> np.ndarray:
    try:
        values = np.asarray(value, dtype=np.float64)
        return values if shape is None else values.reshape(shape)
    except (TypeError, ValueError) as e:
        expected = f" of shape {shape}" if shape is not None else ""
        raise ConfigurationError(f"Particle record field '{name}' is not a numeric array{expected}: {e}") from None


def _as_number(name: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Particle record field '{name}' is not a number: {e}") from None


def _optional_id(record: Mapping, name: str) -> Optional[int]:
    if record.get(name) is None:
        return None
    return _as_number(name, record[name], int)


class Particle:
    """
    Material point with per-phase mechanical state

    Args:
        particle_id: Unique particle id
        coordinates: (dim,) position, dim in {2, 3}
        status: Active flag
        nphases: Number of phases carried by the particle
    """

    def __init__(self, particle_id: int, coordinates, status: bool = True, nphases: int = 1):
        self.id = int(particle_id)
        self._coordinates = np.array(coordinates, dtype=np.float64).reshape(-1)
        self.dimension = check_dimension(self._coordinates.shape[0])
        self.nphases = nphases
        self.status = bool(status)
        self.initialise()

        self._cell_ref = None
        self.cell_id: Optional[int] = None
        self._material_ref = None
        self.material_id: Optional[int] = None

    def initialise(self) -> None:
        """Reset every mechanical field to zero"""
        self._stages = [ParticleStage.UNLOCATED] * self.nphases
        self._completed = [set() for _ in range(self.nphases)]
        self.xi = np.zeros(self.dimension)
        self._volume = 0.0
        self._mass = np.zeros(self.nphases)
        self._stress = np.zeros((self.nphases, VOIGT_SIZE))
        self._strain = np.zeros((self.nphases, VOIGT_SIZE))
        self._strain_rate = np.zeros((self.nphases, VOIGT_SIZE))
        self._dstrain = np.zeros((self.nphases, VOIGT_SIZE))
        self._volumetric_strain_centroid = np.zeros(self.nphases)
        self._velocity = np.zeros((self.nphases, self.dimension))
        self.shapefn = None
        self.bmatrix = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def stage(self) -> ParticleStage:
        """Least advanced stage over all phases"""
        return min(self._stages)

    def stage_of(self, phase: int = 0) -> ParticleStage:
        return self._stages[phase]

    @property
    def coordinates(self) -> np.ndarray:
        return self._coordinates.copy()

    @property
    def cell(self):
        """Bound cell, or None when unbound or the cell no longer exists"""
        return self._cell_ref() if self._cell_ref is not None else None

    @property
    def material(self):
        return self._material_ref() if self._material_ref is not None else None

    def volume(self) -> float:
        return self._volume

    def mass(self, phase: int = 0) -> float:
        return float(self._mass[phase])

    def stress(self, phase: int = 0) -> np.ndarray:
        return self._stress[phase].copy()

    def strain(self, phase: int = 0) -> np.ndarray:
        return self._strain[phase].copy()

    def strain_rate(self, phase: int = 0) -> np.ndarray:
        return self._strain_rate[phase].copy()

    def dstrain(self, phase: int = 0) -> np.ndarray:
        return self._dstrain[phase].copy()

    def velocity(self, phase: int = 0) -> np.ndarray:
        return self._velocity[phase].copy()

    def volumetric_strain_centroid(self, phase: int = 0) -> float:
        return float(self._volumetric_strain_centroid[phase])

    def assign_volume(self, volume: float) -> None:
        self._volume = float(volume)

    def assign_mass(self, phase: int, mass: float) -> None:
        self._mass[phase] = mass

    def assign_velocity(self, phase: int, velocity) -> bool:
        velocity = np.asarray(velocity, dtype=np.float64).reshape(-1)
        if velocity.shape[0] != self.dimension:
            logger.warning("Particle %d: velocity has %d components, expected %d",
                           self.id, velocity.shape[0], self.dimension)
            return False
        self._velocity[phase] = velocity
        return True

    def assign_stress(self, phase: int, stress) -> None:
        """Store a stress computed outside compute_stress (batched kernels)"""
        self.require_stage("assign_stress", phase, ParticleStage.STRAIN_COMPUTED)
        self._stress[phase] = as_voigt(stress)
        self._stages[phase] = ParticleStage.STRESS_COMPUTED

    def assign_status(self, status: bool) -> None:
        self.status = bool(status)

    def require_stage(self, operation: str, phase: int, *allowed: ParticleStage) -> None:
        """Raise StageOrderError unless phase is in one of the allowed stages"""
        current = self._stages[phase]
        if current not in allowed:
            names = " or ".join(s.name for s in allowed)
            raise StageOrderError(
                f"Particle {self.id}: {operation} requires stage {names}, "
                f"phase {phase} is at {current.name}"
            )

    def _run_once(self, operation: str, phase: int) -> None:
        # Accumulating operations may run once per phase between two compute_shapefn calls
        if operation in self._completed[phase]:
            raise StageOrderError(f"Particle {self.id}: {operation} already ran for phase {phase} in this step")
        self._completed[phase].add(operation)

    def _set_stage(self, stage: ParticleStage) -> None:
        self._stages = [stage] * self.nphases

    def _bound_cell(self):
        cell = self.cell
        if cell is None:
            raise LocationError(f"Particle {self.id} is not bound to a cell")
        return cell

    def _bound_material(self):
        material = self.material
        if material is None:
            raise UnassignedMaterialError(f"Particle {self.id} has no material assigned")
        return material

    # ------------------------------------------------------------------
    # Cell and material binding
    # ------------------------------------------------------------------
    def assign_cell(self, cell) -> bool:
        """
        Bind the particle to cell if its coordinates resolve inside it

        On success the particle id moves from the previous cell to the new one.
        Otherwise the previous binding is kept if the particle is still inside
        that cell, and cleared if not.

        Returns:
            True if the particle is bound to cell afterwards
        """
        try:
            xi = cell.locate(self._coordinates)
        except LocationError as e:
            logger.debug("Particle %d: %s", self.id, e)
            xi = None

        if xi is not None:
            previous = self.cell
            if previous is not None:
                previous.remove_particle_id(self.id)
            cell.add_particle_id(self.id)
            self._cell_ref = weakref.ref(cell)
            self.cell_id = cell.id
            self.xi = xi
            self._set_stage(ParticleStage.LOCATED)
            return True

        previous = self.cell
        if previous is not None and not previous.is_point_in_cell(self._coordinates):
            self.remove_cell()
        return False

    def remove_cell(self) -> None:
        """Drop the cell binding and the membership entry in that cell"""
        cell = self.cell
        if cell is not None:
            cell.remove_particle_id(self.id)
        self._cell_ref = None
        self.cell_id = None
        self._set_stage(ParticleStage.UNLOCATED)

    def assign_material(self, material) -> bool:
        if material is None:
            return False
        if material.dimension != self.dimension:
            logger.warning("Particle %d: material %d is %dD, particle is %dD",
                           self.id, material.id, material.dimension, self.dimension)
            return False
        self._material_ref = weakref.ref(material)
        self.material_id = material.id
        return True

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    def compute_reference_location(self) -> None:
        """Recompute local coordinates in the bound cell"""
        cell = self._bound_cell()
        self.xi = cell.transform_real_to_unit_cell(self._coordinates)
        self._set_stage(ParticleStage.LOCATED)

    def compute_shapefn(self) -> None:
        """Shape functions and gradients at xi; opens a new step for every phase"""
        for phase in range(self.nphases):
            self.require_stage("compute_shapefn", phase, ParticleStage.LOCATED)
        cell = self._bound_cell()
        self.shapefn = cell.shapefn(self.xi)
        self.bmatrix = cell.bmatrix(self.xi)
        self._completed = [set() for _ in range(self.nphases)]
        self._set_stage(ParticleStage.SHAPEFN_COMPUTED)

    def compute_volume(self) -> None:
        """Share the cell volume equally among the particles inside it"""
        cell = self._bound_cell()
        self._volume = cell.volume() / cell.nparticles()

    def update_volume(self, phase: int = 0) -> None:
        """Scale the volume by the volumetric strain increment of the step"""
        self.require_stage("update_volume", phase, ParticleStage.STRAIN_COMPUTED, ParticleStage.STRESS_COMPUTED,
                           ParticleStage.FORCES_MAPPED, ParticleStage.POSITION_UPDATED)
        self._run_once("update_volume", phase)
        self._volume *= 1.0 + volumetric(self._dstrain[phase])

    def compute_mass(self, phase: int = 0) -> None:
        material = self._bound_material()
        self._mass[phase] = self._volume * material.property('density')

    # ------------------------------------------------------------------
    # Particle -> grid
    # ------------------------------------------------------------------
    def map_mass_momentum_to_nodes(self, phase: int = 0) -> None:
        self.require_stage("map_mass_momentum_to_nodes", phase, ParticleStage.SHAPEFN_COMPUTED)
        cell = self._bound_cell()
        self._run_once("map_mass_momentum_to_nodes", phase)
        self._scatter_mass_momentum(cell, phase)

    def remap_mass_momentum(self, phase: int = 0) -> None:
        """
        Add this step's mass and momentum again after the nodal mass and
        momentum were cleared. Valid after map_mass_momentum_to_nodes and
        before the position update.
        """
        self.require_stage("remap_mass_momentum", phase, ParticleStage.SHAPEFN_COMPUTED,
                           ParticleStage.STRAIN_COMPUTED, ParticleStage.STRESS_COMPUTED,
                           ParticleStage.FORCES_MAPPED)
        if "map_mass_momentum_to_nodes" not in self._completed[phase]:
            raise StageOrderError(f"Particle {self.id}: phase {phase} mass was not mapped in this step")
        self._scatter_mass_momentum(self._bound_cell(), phase)

    def _scatter_mass_momentum(self, cell, phase: int) -> None:
        mass = self._mass[phase]
        cell.map_mass(self.shapefn, phase, mass)
        cell.map_momentum(self.shapefn, phase, mass * self._velocity[phase])

    def map_body_force(self, phase: int, gravity) -> None:
        self.require_stage("map_body_force", phase, ParticleStage.SHAPEFN_COMPUTED,
                           ParticleStage.STRAIN_COMPUTED, ParticleStage.STRESS_COMPUTED)
        cell = self._bound_cell()
        self._run_once("map_body_force", phase)
        cell.map_body_force(self.shapefn, phase, self._mass[phase], np.asarray(gravity, dtype=np.float64))

    def map_internal_force(self, phase: int = 0) -> None:
        self.require_stage("map_internal_force", phase, ParticleStage.STRESS_COMPUTED)
        cell = self._bound_cell()
        reduced_stress = voigt_to_reduced(self._stress[phase], self.dimension)
        cell.map_internal_force(self.bmatrix, phase, self._volume, reduced_stress)
        self._stages[phase] = ParticleStage.FORCES_MAPPED

    # ------------------------------------------------------------------
    # Constitutive update
    # ------------------------------------------------------------------
    def compute_strain(self, phase: int, dt: float) -> None:
        """
        Update strain increment, total strain, strain rate and centroid volumetric strain

        The centroid strain rate uses gradients at the cell centre, separate
        from the particle location, to reduce volumetric locking.
        """
        self.require_stage("compute_strain", phase, ParticleStage.SHAPEFN_COMPUTED)
        cell = self._bound_cell()
        strain_rate = cell.compute_strain_rate(self.bmatrix, phase)
        dstrain = strain_rate * dt

        self._dstrain[phase] = dstrain
        self._strain[phase] += dstrain
        self._strain_rate[phase] = strain_rate

        centroid_rate = cell.compute_strain_rate_centroid(phase)
        self._volumetric_strain_centroid[phase] += dt * volumetric(centroid_rate)
        self._stages[phase] = ParticleStage.STRAIN_COMPUTED

    def compute_stress(self, phase: int = 0) -> None:
        """Ask the material for the new stress, passing this particle as context"""
        self.require_stage("compute_stress", phase, ParticleStage.STRAIN_COMPUTED)
        material = self._bound_material()
        self._stress[phase] = material.compute_stress(
            self._stress[phase], self._dstrain[phase], self, phase=phase
        )
        self._stages[phase] = ParticleStage.STRESS_COMPUTED

    # ------------------------------------------------------------------
    # Grid -> particle
    # ------------------------------------------------------------------
    def compute_updated_position(self, phase: int, dt: float) -> None:
        """Velocity from interpolated nodal acceleration, position from nodal velocity"""
        self.require_stage("compute_updated_position", phase, ParticleStage.FORCES_MAPPED)
        cell = self._bound_cell()
        nodal_acceleration = cell.interpolate_nodal_acceleration(self.shapefn, phase)
        self._velocity[phase] += nodal_acceleration * dt
        nodal_velocity = cell.interpolate_nodal_velocity(self.shapefn, phase)
        self._coordinates += nodal_velocity * dt
        self._stages[phase] = ParticleStage.POSITION_UPDATED

    def compute_updated_position_velocity(self, phase: int, dt: float) -> None:
        """Velocity and position directly from interpolated nodal velocity"""
        self.require_stage("compute_updated_position_velocity", phase, ParticleStage.FORCES_MAPPED)
        cell = self._bound_cell()
        nodal_velocity = cell.interpolate_nodal_velocity(self.shapefn, phase)
        self._velocity[phase] = nodal_velocity
        self._coordinates += nodal_velocity * dt
        self._stages[phase] = ParticleStage.POSITION_UPDATED

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    def serialize_state(self) -> ParticleRecord:
        return ParticleRecord(
            id=self.id,
            coordinates=self._coordinates.copy(),
            velocity=self._velocity.copy(),
            stress=self._stress.copy(),
            strain=self._strain.copy(),
            volume=self._volume,
            mass=self._mass.copy(),
            status=self.status,
            material_id=self.material_id,
            cell_id=self.cell_id,
        )

    def initialise_from_state(self, record: Union[ParticleRecord, Mapping]) -> None:
        """
        Restore every field of a restart record

        The cell and material ids are restored but not bound; the owner of the
        mesh and materials rebinds them.

        Raises:
            ConfigurationError: record does not match the particle layout
        """
        if not isinstance(record, ParticleRecord):
            record = ParticleRecord.from_dict(record)

        coordinates = _as_array('coordinates', record.coordinates).reshape(-1)
        if coordinates.shape[0] != self.dimension:
            raise ConfigurationError(
                f"Particle {self.id}: record has {coordinates.shape[0]} coordinates, expected {self.dimension}"
            )
        velocity = _as_array('velocity', record.velocity, (self.nphases, self.dimension))
        stress = _as_array('stress', record.stress, (self.nphases, VOIGT_SIZE))
        strain = _as_array('strain', record.strain, (self.nphases, VOIGT_SIZE))
        mass = _as_array('mass', record.mass, (self.nphases,))
        volume = _as_number('volume', record.volume, float)

        cell = self.cell
        if cell is not None:
            cell.remove_particle_id(self.id)
        self.initialise()
        self.id = int(record.id)
        self._coordinates = coordinates.copy()
        self._velocity = velocity.copy()
        self._stress = stress.copy()
        self._strain = strain.copy()
        self._mass = mass.copy()
        self._volume = volume
        self.status = bool(record.status)

        self._cell_ref = None
        self.cell_id = record.cell_id
        self._material_ref = None
        self.material_id = record.material_id

    def __repr__(self) -> str:
        return f"Particle(id={self.id}, coordinates={self._coordinates.tolist()}, cell={self.cell_id})"
