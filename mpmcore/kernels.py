"""
Data-parallel Bingham stress update with Taichi

Evaluates the same update as BinghamMaterial.compute_stress for a batch of
particles in one kernel launch. Each particle writes only its own row, so the
parallel loop needs no synchronization.

Taichi must be initialized by the caller (ti.init), preferably with
default_fp=ti.f64 so literals match the float64 fields.
"""
import numpy as np
import taichi as ti

from .exceptions import UnsupportedDimensionError
from .materials import CRITICAL_SHEAR_RATE_FLOOR, BinghamMaterial


@ti.func
def bingham_stress(
    stress: ti.template(),
    dstrain: ti.template(),
    strain_rate: ti.template(),
    bulk_modulus: ti.f64,
    tau0: ti.f64,
    mu: ti.f64,
    critical_shear_rate: ti.f64,
    dimension: ti.i32
):
    """
    Bingham stress update for one particle

    Args:
        stress: 6-vector stress at the start of the step
        dstrain: 6-vector strain increment
        strain_rate: 6-vector strain rate
        bulk_modulus: K = E / (3 (1 - 2 nu))
        tau0: Yield stress
        mu: Plastic viscosity
        critical_shear_rate: Already floored critical shear rate
        dimension: 2 or 3 (validated on the Python side)

    Returns:
        updated_stress: 6-vector
    """
    pressure_old = (stress[0] + stress[1] + stress[2]) / 3.0
    pressure_new = pressure_old + bulk_modulus * (dstrain[0] + dstrain[1] + dstrain[2])

    shear_rate = 2.0 * strain_rate.dot(strain_rate)
    apparent_viscosity = ti.cast(0.0, ti.f64)
    if shear_rate > critical_shear_rate * critical_shear_rate:
        apparent_viscosity = 2.0 * (tau0 / ti.sqrt(shear_rate) + mu)

    tau = apparent_viscosity * strain_rate
    if tau.dot(tau) < 2.0 * tau0 * tau0:
        tau = ti.Vector.zero(ti.f64, 6)

    updated = ti.Vector.zero(ti.f64, 6)
    if dimension == 3:
        updated = tau
        for i in ti.static(range(3)):
            updated[i] += pressure_new
    else:
        updated[0] = tau[0] + pressure_new
        updated[1] = tau[1] + pressure_new
        updated[3] = tau[3]
    return updated


@ti.data_oriented
class BinghamStressKernel:
    """
    Batched Bingham stress update for up to capacity particles of one material

    The fields live in their own SNode tree, so release() frees them when the
    owner outgrows the capacity and builds a larger kernel.

    Usage:
        kernel = BinghamStressKernel(material, capacity)
        new_stress = kernel.compute(stress, dstrain, strain_rate)  # (n, 6) arrays, n <= capacity
        kernel.release()
    """

    def __init__(self, material: BinghamMaterial, capacity: int):
        if material.dimension not in (2, 3):
            raise UnsupportedDimensionError(
                f"BinghamStressKernel supports dimensions 2 and 3, got {material.dimension}"
            )
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        params = material.params
        self.material = material
        self.capacity = capacity
        self.dimension = material.dimension
        self.bulk_modulus = params.bulk_modulus
        self.tau0 = params.tau0
        self.mu = params.mu
        self.critical_shear_rate = max(params.critical_shear_rate, CRITICAL_SHEAR_RATE_FLOOR)

        self.stress = ti.Vector.field(6, dtype=ti.f64)
        self.dstrain = ti.Vector.field(6, dtype=ti.f64)
        self.strain_rate = ti.Vector.field(6, dtype=ti.f64)
        self.updated_stress = ti.Vector.field(6, dtype=ti.f64)
        fb = ti.FieldsBuilder()
        fb.dense(ti.i, capacity).place(self.stress, self.dstrain, self.strain_rate, self.updated_stress)
        self._snode_tree = fb.finalize()

    @property
    def released(self) -> bool:
        return self._snode_tree is None

    def release(self) -> None:
        """Free the taichi fields; the kernel cannot be used afterwards"""
        if self._snode_tree is not None:
            self._snode_tree.destroy()
            self._snode_tree = None

    @ti.kernel
    def _update(self, n: ti.i32, bulk_modulus: ti.f64, tau0: ti.f64, mu: ti.f64,
                critical_shear_rate: ti.f64, dimension: ti.i32):
        for p in range(n):
            self.updated_stress[p] = bingham_stress(
                self.stress[p], self.dstrain[p], self.strain_rate[p],
                bulk_modulus, tau0, mu, critical_shear_rate, dimension
            )

    def compute(self, stress: np.ndarray, dstrain: np.ndarray, strain_rate: np.ndarray) -> np.ndarray:
        """Update (n, 6) stresses, n <= capacity, and return the result as a numpy array"""
        if self.released:
            raise RuntimeError("BinghamStressKernel was released")
        n = len(stress)
        shape = (n, 6)
        for name, arr in (('stress', stress), ('dstrain', dstrain), ('strain_rate', strain_rate)):
            if np.shape(arr) != shape:
                raise ValueError(f"{name} must have shape {shape}, got {np.shape(arr)}")
        if n > self.capacity:
            raise ValueError(f"{n} particles exceed kernel capacity {self.capacity}")

        self.stress.from_numpy(self._padded(stress))
        self.dstrain.from_numpy(self._padded(dstrain))
        self.strain_rate.from_numpy(self._padded(strain_rate))
        self._update(n, self.bulk_modulus, self.tau0, self.mu, self.critical_shear_rate, self.dimension)
        return self.updated_stress.to_numpy()[:n]

    def _padded(self, arr: np.ndarray) -> np.ndarray:
        # from_numpy needs the full field shape; rows past n are never read
        padded = np.zeros((self.capacity, 6), dtype=np.float64)
        padded[:len(arr)] = arr
        return padded
