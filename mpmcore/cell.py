"""
Background cells: linear Lagrange elements, inverse mapping and particle membership
"""
import itertools
import logging
import threading
from typing import Optional, Set

import numpy as np

from .exceptions import LocationError, MeshInvariantError
from .tensor import check_dimension, compute_bmatrix, reduced_to_voigt

logger = logging.getLogger(__name__)


class LagrangeElement:
    """
    Linear Lagrange element on the reference cube [-1, 1]^dim

    dim=2: 4-noded quadrilateral, nodes counter-clockwise from (-1, -1)
    dim=3: 8-noded hexahedron, bottom face (z=-1) then top face (z=+1)
    """

    def __init__(self, dimension: int):
        self.dimension = check_dimension(dimension)
        square = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])
        if dimension == 2:
            self.local_nodes = square
        else:
            self.local_nodes = np.vstack([
                np.hstack([square, -np.ones((4, 1))]),
                np.hstack([square, np.ones((4, 1))]),
            ])
        self.n_nodes = len(self.local_nodes)

        # 2-point Gauss rule per direction, unit weights
        g = 1.0 / np.sqrt(3.0)
        self.gauss_points = np.array(list(itertools.product((-g, g), repeat=dimension)))

    def shapefn(self, xi: np.ndarray) -> np.ndarray:
        """Shape function values (n_nodes,) at local coordinates xi"""
        factors = 0.5 * (1.0 + self.local_nodes * np.asarray(xi))
        return np.prod(factors, axis=1)

    def grad_shapefn(self, xi: np.ndarray) -> np.ndarray:
        """Shape function gradients w.r.t. local coordinates (n_nodes, dim)"""
        factors = 0.5 * (1.0 + self.local_nodes * np.asarray(xi))
        grad = np.empty_like(factors)
        for k in range(self.dimension):
            others = np.prod(np.delete(factors, k, axis=1), axis=1)
            grad[:, k] = 0.5 * self.local_nodes[:, k] * others
        return grad


class Cell:
    """
    A background cell

    Holds its nodal coordinates and node ids into the mesh-owned NodeArena,
    evaluates shape functions, maps particle contributions to nodes and keeps
    the set of particle ids currently inside it.
    """

    # Newton inverse map controls
    max_iterations = 25
    tolerance = 1e-12
    # Tolerance on local coordinates when testing whether a point is inside
    inside_tolerance = 1e-10

    def __init__(self, cell_id: int, node_ids, nodal_coordinates: np.ndarray, arena):
        self.id = cell_id
        self.node_ids = np.asarray(node_ids, dtype=np.int64)
        self.nodal_coordinates = np.asarray(nodal_coordinates, dtype=np.float64)
        self.dimension = self.nodal_coordinates.shape[1]
        self.element = LagrangeElement(self.dimension)
        if len(self.node_ids) != self.element.n_nodes:
            raise ValueError(
                f"Cell {cell_id} needs {self.element.n_nodes} nodes, got {len(self.node_ids)}"
            )
        self.arena = arena

        self.bbox_min = self.nodal_coordinates.min(axis=0)
        self.bbox_max = self.nodal_coordinates.max(axis=0)
        self.centroid = self.nodal_coordinates.mean(axis=0)
        self._volume = self._compute_volume()
        self._centroid_bmatrix = compute_bmatrix(self.dn_dx(np.zeros(self.dimension)))

        self._particle_ids: Set[int] = set()
        self._lock = threading.Lock()

    @property
    def n_nodes(self) -> int:
        return self.element.n_nodes

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    def jacobian(self, xi: np.ndarray) -> np.ndarray:
        return self.nodal_coordinates.T @ self.element.grad_shapefn(xi)

    def _compute_volume(self) -> float:
        volume = sum(np.linalg.det(self.jacobian(gp)) for gp in self.element.gauss_points)
        if volume <= 0.0:
            raise ValueError(f"Cell {self.id} has non-positive volume {volume}; check node ordering")
        return float(volume)

    def volume(self) -> float:
        return self._volume

    def shapefn(self, xi: np.ndarray) -> np.ndarray:
        return self.element.shapefn(xi)

    def dn_dx(self, xi: np.ndarray) -> np.ndarray:
        """Shape function gradients in global coordinates (n_nodes, dim)"""
        grad_local = self.element.grad_shapefn(xi)
        jac = self.jacobian(xi)
        return grad_local @ np.linalg.inv(jac)

    def bmatrix(self, xi: np.ndarray) -> np.ndarray:
        return compute_bmatrix(self.dn_dx(xi))

    def transform_real_to_unit_cell(self, point: np.ndarray) -> np.ndarray:
        """
        Inverse-map a global point to local coordinates with Newton iterations

        Raises:
            LocationError: singular Jacobian or no convergence
        """
        point = np.asarray(point, dtype=np.float64)
        scale = max(float(np.max(self.bbox_max - self.bbox_min)), 1.0)
        xi = np.zeros(self.dimension)
        for _ in range(self.max_iterations):
            residual = point - self.nodal_coordinates.T @ self.element.shapefn(xi)
            if np.linalg.norm(residual) <= self.tolerance * scale:
                return xi
            try:
                xi = xi + np.linalg.solve(self.jacobian(xi), residual)
            except np.linalg.LinAlgError as e:
                raise LocationError(f"Singular Jacobian in cell {self.id}: {e}") from e
        raise LocationError(
            f"Inverse mapping of {point.tolist()} in cell {self.id} did not converge "
            f"after {self.max_iterations} iterations"
        )

    def locate(self, point: np.ndarray) -> Optional[np.ndarray]:
        """Local coordinates of point, or None when it lies outside the cell"""
        point = np.asarray(point, dtype=np.float64)
        slack = self.inside_tolerance * max(float(np.max(self.bbox_max - self.bbox_min)), 1.0)
        if np.any(point < self.bbox_min - slack) or np.any(point > self.bbox_max + slack):
            return None
        xi = self.transform_real_to_unit_cell(point)
        if np.all(np.abs(xi) <= 1.0 + self.inside_tolerance):
            return xi
        return None

    def is_point_in_cell(self, point: np.ndarray) -> bool:
        try:
            return self.locate(point) is not None
        except LocationError:
            return False

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def add_particle_id(self, particle_id: int) -> None:
        with self._lock:
            if particle_id in self._particle_ids:
                raise MeshInvariantError(f"Particle {particle_id} is already registered in cell {self.id}")
            self._particle_ids.add(particle_id)

    def remove_particle_id(self, particle_id: int) -> None:
        with self._lock:
            if particle_id not in self._particle_ids:
                raise MeshInvariantError(f"Particle {particle_id} is not registered in cell {self.id}")
            self._particle_ids.discard(particle_id)

    @property
    def particle_ids(self) -> frozenset:
        with self._lock:
            return frozenset(self._particle_ids)

    def nparticles(self) -> int:
        with self._lock:
            return len(self._particle_ids)

    # ------------------------------------------------------------------
    # Particle -> node mapping
    # ------------------------------------------------------------------
    def map_mass(self, shapefn: np.ndarray, phase: int, mass: float) -> None:
        self.arena.accumulate('mass', phase, self.node_ids, shapefn * mass)

    def map_momentum(self, shapefn: np.ndarray, phase: int, momentum: np.ndarray) -> None:
        self.arena.accumulate('momentum', phase, self.node_ids, np.outer(shapefn, momentum))

    def map_body_force(self, shapefn: np.ndarray, phase: int, mass: float, gravity: np.ndarray) -> None:
        self.arena.accumulate('external_force', phase, self.node_ids, np.outer(shapefn, mass * gravity))

    def map_internal_force(self, bmatrix: np.ndarray, phase: int, volume: float,
                           reduced_stress: np.ndarray) -> None:
        """Accumulate -V * B_i^T sigma on every node"""
        force = -volume * np.einsum('isd,s->id', bmatrix, reduced_stress)
        self.arena.accumulate('internal_force', phase, self.node_ids, force)

    # ------------------------------------------------------------------
    # Node -> particle interpolation
    # ------------------------------------------------------------------
    def interpolate_nodal_velocity(self, shapefn: np.ndarray, phase: int) -> np.ndarray:
        return shapefn @ self.arena.velocity[phase, self.node_ids]

    def interpolate_nodal_acceleration(self, shapefn: np.ndarray, phase: int) -> np.ndarray:
        return shapefn @ self.arena.acceleration[phase, self.node_ids]

    def compute_strain_rate(self, bmatrix: np.ndarray, phase: int) -> np.ndarray:
        """Voigt strain rate sum_i B_i v_i from nodal velocities"""
        nodal_velocity = self.arena.velocity[phase, self.node_ids]
        reduced = np.einsum('isd,id->s', bmatrix, nodal_velocity)
        return reduced_to_voigt(reduced, self.dimension)

    def compute_strain_rate_centroid(self, phase: int) -> np.ndarray:
        return self.compute_strain_rate(self._centroid_bmatrix, phase)

    def __repr__(self) -> str:
        return f"Cell(id={self.id}, nodes={self.node_ids.tolist()})"
