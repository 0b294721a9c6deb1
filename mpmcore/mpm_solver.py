"""
MPM Solver Main Flow
Drives every particle through the explicit update-stress-first cycle on a background mesh
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from .config import MPMConfig
from .exceptions import RECOVERABLE_ERRORS, ConfigurationError, LocationError, MaterialError
from .materials import BinghamMaterial, Material, create_material
from .mesh import Mesh
from .particle import Particle, ParticleRecord, ParticleStage

logger = logging.getLogger(__name__)


@dataclass
class StageFailure:
    """A recoverable error that stopped one particle for the rest of a step"""
    particle_id: int
    stage: str
    error: Exception

    def __str__(self) -> str:
        return f"particle {self.particle_id} failed in {self.stage}: {type(self.error).__name__}: {self.error}"


@dataclass
class StepReport:
    """Outcome of one time step"""
    step: int
    time: float
    n_active: int
    n_completed: int = 0
    failures: List[StageFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class MPMSolver:
    """
    Explicit MPM solver

    Every step runs the following phases, each completing for all particles
    before the next begins (later phases read nodal values summed over all
    particles):

    1. locate particles, compute shape functions
    2. map mass and momentum to nodes, compute nodal velocity
    3. compute strain and stress
    4. map body and internal forces, compute nodal acceleration and velocity
    5. update particle velocity and position, update volume

    A recoverable error removes the particle from the remaining phases of the
    step and is reported in the StepReport. MeshInvariantError is not caught.
    """

    def __init__(self, config: MPMConfig, mesh: Mesh, materials: Optional[Dict[int, Material]] = None):
        """
        Initialize MPM solver

        Args:
            config: MPM configuration
            mesh: Background mesh (owns cells and nodal storage)
            materials: Material registry by id; built from config.materials when omitted
        """
        self.config = config
        self.mesh = mesh
        self.dimension = mesh.dimension
        self.nphases = config.analysis.nphases
        if mesh.nphases < self.nphases:
            raise ConfigurationError(
                f"Mesh stores {mesh.nphases} phases, analysis needs {self.nphases}"
            )

        if materials is None:
            materials = {
                m.id: create_material(m.type, m.id, mesh.dimension, m.parameters)
                for m in config.materials
            }
        self.materials = dict(materials)

        self.gravity = np.asarray(config.analysis.gravity, dtype=np.float64)
        if self.gravity.shape != (self.dimension,):
            raise ConfigurationError(
                f"Gravity must have {self.dimension} components, got {self.gravity.shape[0]}"
            )

        self.dt = config.time.dt
        self.current_step = 0
        self.particles: List[Particle] = []
        self._particle_ids = set()
        self._stress_kernels = {}

        self._executor = None
        if config.analysis.n_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=config.analysis.n_workers)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    @classmethod
    def from_config(cls, config: MPMConfig) -> 'MPMSolver':
        """Build mesh, materials and particles from a complete configuration"""
        mesh = Mesh(config.mesh.dimension, config.mesh.nodes, config.mesh.cells,
                    nphases=config.analysis.nphases)
        for c in config.mesh.velocity_constraints:
            mesh.assign_velocity_constraint(c.node, c.direction, c.velocity)
        solver = cls(config, mesh)
        if config.particles.coordinates:
            solver.add_particles(
                config.particles.coordinates,
                velocities=config.particles.velocities,
                material_id=config.particles.material_id
            )
        return solver

    def material(self, material_id: int) -> Material:
        try:
            return self.materials[material_id]
        except KeyError:
            raise MaterialError(f"Material {material_id} is not registered") from None

    def add_particle(self, particle: Particle, material_id: Optional[int] = None) -> None:
        if particle.id in self._particle_ids:
            raise ConfigurationError(f"Duplicate particle id {particle.id}")
        if particle.dimension != self.dimension:
            raise ConfigurationError(
                f"Particle {particle.id} is {particle.dimension}D, mesh is {self.dimension}D"
            )
        if material_id is not None and not particle.assign_material(self.material(material_id)):
            raise ConfigurationError(f"Material {material_id} cannot be assigned to particle {particle.id}")
        self.particles.append(particle)
        self._particle_ids.add(particle.id)

    def add_particles(self, coordinates, velocities=None, material_id: Optional[int] = None) -> List[Particle]:
        """Create particles with consecutive ids starting after the largest existing id"""
        coordinates = np.asarray(coordinates, dtype=np.float64)
        start = max(self._particle_ids, default=-1) + 1
        created = []
        for i, x in enumerate(coordinates):
            particle = Particle(start + i, x, nphases=self.nphases)
            if velocities is not None:
                for phase in range(self.nphases):
                    particle.assign_velocity(phase, velocities[i])
            self.add_particle(particle, material_id)
            created.append(particle)
        return created

    def initialise_particles(self) -> StepReport:
        """Locate every particle and compute its initial volume and mass"""
        report = StepReport(step=self.current_step, time=self.current_step * self.dt,
                            n_active=len(self.active_particles()))
        located = self._run_phase("locate", self._locate, self.active_particles(), report)
        volumes = self._run_phase("compute_volume", lambda p: p.compute_volume(), located, report)
        self._run_phase("compute_mass", self._compute_mass, volumes, report)
        self._log_failures(report)
        return report

    def active_particles(self) -> List[Particle]:
        return [p for p in self.particles if p.status]

    # ------------------------------------------------------------------
    # Phase execution
    # ------------------------------------------------------------------
    def _run_phase(self, stage: str, operation: Callable[[Particle], None],
                   particles: Iterable[Particle], report: StepReport) -> List[Particle]:
        """
        Apply operation to every particle, returning those that succeeded

        Returns only after all particles have finished, which is the barrier
        between phases.
        """
        particles = list(particles)

        def attempt(particle):
            try:
                operation(particle)
                return None
            except RECOVERABLE_ERRORS as e:
                return StageFailure(particle.id, stage, e)

        if self._executor is not None and len(particles) > 1:
            outcomes = list(self._executor.map(attempt, particles))
        else:
            outcomes = [attempt(p) for p in particles]

        survivors = []
        for particle, failure in zip(particles, outcomes):
            if failure is None:
                survivors.append(particle)
            else:
                report.failures.append(failure)
        return survivors

    def _locate(self, particle: Particle) -> None:
        if not self.mesh.locate_particle(particle):
            particle.assign_status(False)
            logger.warning("Particle %d at %s left the mesh and was deactivated",
                           particle.id, particle.coordinates.tolist())
            raise LocationError(f"Particle {particle.id} is outside the mesh")

    def _compute_mass(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            particle.compute_mass(phase)

    def _shapefn(self, particle: Particle) -> None:
        particle.compute_reference_location()
        particle.compute_shapefn()

    def _map_mass_momentum(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            particle.map_mass_momentum_to_nodes(phase)

    def _compute_strain(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            particle.compute_strain(phase, self.dt)

    def _compute_stress(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            particle.compute_stress(phase)

    def _remap_mass_momentum(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            particle.remap_mass_momentum(phase)

    def _map_forces(self, particle: Particle) -> None:
        # Check every phase first so a particle maps either all of its forces or none
        for phase in range(self.nphases):
            particle.require_stage("map_forces", phase, ParticleStage.STRESS_COMPUTED)
        if particle.cell is None:
            raise LocationError(f"Particle {particle.id} is not bound to a cell")
        for phase in range(self.nphases):
            particle.map_body_force(phase, self.gravity)
            particle.map_internal_force(phase)

    def _update_position(self, particle: Particle) -> None:
        for phase in range(self.nphases):
            if self.config.analysis.integration == 'velocity':
                particle.compute_updated_position_velocity(phase, self.dt)
            else:
                particle.compute_updated_position(phase, self.dt)
        if self.config.analysis.update_volume:
            particle.update_volume(0)

    def _rebuild_nodal_momentum(self, particles: List[Particle], report: StepReport) -> None:
        """
        Recompute nodal mass, momentum and velocity from the particles that
        mapped their forces, dropping what failed particles added earlier in the step
        """
        logger.debug("Step %d: rebuilding nodal momentum from %d particles", report.step, len(particles))
        self.mesh.reset_nodes('mass', 'momentum')
        self._run_phase("map_mass_momentum", self._remap_mass_momentum, particles, report)
        for phase in range(self.nphases):
            self.mesh.compute_nodal_velocity(phase)

    def _compute_stress_batched(self, particles: List[Particle], report: StepReport) -> List[Particle]:
        """Stress phase on the taichi backend: Bingham particles in one kernel per material"""
        from .kernels import BinghamStressKernel

        by_material: Dict[int, List[Particle]] = {}
        others = []
        for particle in particles:
            material = particle.material
            if isinstance(material, BinghamMaterial) and material.is_configured:
                by_material.setdefault(material.id, []).append(particle)
            else:
                others.append(particle)

        survivors = self._run_phase("compute_stress", self._compute_stress, others, report)
        for material_id, group in by_material.items():
            kernel = self._stress_kernels.get(material_id)
            if kernel is None or kernel.capacity < len(group):
                capacity = len(group) if kernel is None else max(len(group), 2 * kernel.capacity)
                if kernel is not None:
                    kernel.release()
                kernel = BinghamStressKernel(group[0].material, capacity)
                self._stress_kernels[material_id] = kernel
            for phase in range(self.nphases):
                stress = np.array([p.stress(phase) for p in group])
                dstrain = np.array([p.dstrain(phase) for p in group])
                strain_rate = np.array([p.strain_rate(phase) for p in group])
                updated = kernel.compute(stress, dstrain, strain_rate)
                for particle, s in zip(group, updated):
                    particle.assign_stress(phase, s)
            survivors.extend(group)
        return survivors

    # ------------------------------------------------------------------
    # Time stepping
    # ------------------------------------------------------------------
    def step(self) -> StepReport:
        """Advance all active particles by one time step"""
        mesh = self.mesh
        particles = self.active_particles()
        report = StepReport(step=self.current_step, time=self.current_step * self.dt,
                            n_active=len(particles))

        mesh.reset_nodes()

        particles = self._run_phase("locate", self._locate, particles, report)
        particles = self._run_phase("compute_shapefn", self._shapefn, particles, report)

        n_failed = len(report.failures)
        particles = self._run_phase("map_mass_momentum", self._map_mass_momentum, particles, report)
        for phase in range(self.nphases):
            mesh.compute_nodal_velocity(phase)

        particles = self._run_phase("compute_strain", self._compute_strain, particles, report)
        if self.config.analysis.backend == 'taichi':
            particles = self._compute_stress_batched(particles, report)
        else:
            particles = self._run_phase("compute_stress", self._compute_stress, particles, report)

        particles = self._run_phase("map_forces", self._map_forces, particles, report)
        if len(report.failures) > n_failed:
            self._rebuild_nodal_momentum(particles, report)
        for phase in range(self.nphases):
            mesh.compute_nodal_acceleration_velocity(phase, self.dt)

        particles = self._run_phase("update_position", self._update_position, particles, report)

        report.n_completed = len(particles)
        self.current_step += 1
        self._log_failures(report)
        return report

    def run(self, num_steps: Optional[int] = None,
            callback: Optional[Callable[['MPMSolver', StepReport], None]] = None) -> List[StepReport]:
        """Run num_steps steps (config.time.num_steps by default)"""
        if num_steps is None:
            num_steps = self.config.time.num_steps
        reports = []
        for _ in range(num_steps):
            report = self.step()
            reports.append(report)
            if callback is not None:
                callback(self, report)
        return reports

    def _log_failures(self, report: StepReport) -> None:
        for failure in report.failures:
            logger.warning("Step %d: %s", report.step, failure)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown()
            self._executor = None
        for kernel in self._stress_kernels.values():
            kernel.release()
        self._stress_kernels = {}

    # ------------------------------------------------------------------
    # Output and restart
    # ------------------------------------------------------------------
    def get_particle_data(self) -> Dict[str, np.ndarray]:
        """Get particle data as numpy arrays"""
        return {
            'id': np.array([p.id for p in self.particles], dtype=np.int64),
            'x': np.array([p.coordinates for p in self.particles]).reshape(-1, self.dimension),
            'v': np.array([[p.velocity(k) for k in range(self.nphases)] for p in self.particles]),
            'stress': np.array([[p.stress(k) for k in range(self.nphases)] for p in self.particles]),
            'strain': np.array([[p.strain(k) for k in range(self.nphases)] for p in self.particles]),
            'mass': np.array([[p.mass(k) for k in range(self.nphases)] for p in self.particles]),
            'volume': np.array([p.volume() for p in self.particles]),
            'status': np.array([p.status for p in self.particles], dtype=bool),
        }

    def serialize_particles(self) -> List[ParticleRecord]:
        return [p.serialize_state() for p in self.particles]

    def restore_particles(self, records: Iterable) -> None:
        """
        Replace the particle set with restart records and rebind cells and materials by id
        """
        for particle in self.particles:
            if particle.cell is not None:
                particle.remove_cell()
        self.particles = []
        self._particle_ids = set()

        for record in records:
            if not isinstance(record, ParticleRecord):
                record = ParticleRecord.from_dict(record)
            particle = Particle(record.id, record.coordinates, nphases=self.nphases)
            particle.initialise_from_state(record)
            self.add_particle(particle, record.material_id)
            if record.cell_id is not None and not particle.assign_cell(self.mesh.cell(record.cell_id)):
                logger.warning("Particle %d is no longer inside cell %d", particle.id, record.cell_id)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
