"""
Voigt-notation and B-matrix helpers shared by particles, cells and materials.

Voigt order is (xx, yy, zz, xy, yz, xz) with engineering shear strains.
Stress and strain vectors are always length 6; in 2D the zz, yz and xz
components of a strain increment stay zero.
"""
import numpy as np

from .exceptions import UnsupportedDimensionError

VOIGT_SIZE = 6
SUPPORTED_DIMENSIONS = (2, 3)

# Voigt components carried by the reduced (dimension-sized) strain vector
_REDUCED_COMPONENTS = {
    2: (0, 1, 3),
    3: (0, 1, 2, 3, 4, 5),
}

DIRAC_DELTA = np.array([1.0, 1.0, 1.0, 0.0, 0.0, 0.0])


def check_dimension(dimension: int) -> int:
    """Return dimension if supported, raise UnsupportedDimensionError otherwise."""
    if dimension not in SUPPORTED_DIMENSIONS:
        raise UnsupportedDimensionError(
            f"Spatial dimension {dimension} is not supported, expected one of {SUPPORTED_DIMENSIONS}"
        )
    return dimension


def zero_voigt() -> np.ndarray:
    return np.zeros(VOIGT_SIZE, dtype=np.float64)


def as_voigt(values) -> np.ndarray:
    """Copy values into a length-6 float64 vector, rejecting any other length."""
    vec = np.asarray(values, dtype=np.float64).reshape(-1)
    if vec.shape[0] != VOIGT_SIZE:
        raise ValueError(f"Voigt vector must have {VOIGT_SIZE} components, got {vec.shape[0]}")
    return vec.copy()


def reduced_to_voigt(reduced: np.ndarray, dimension: int) -> np.ndarray:
    """Scatter a reduced strain vector (3 comps in 2D, 6 in 3D) into Voigt form."""
    voigt = zero_voigt()
    voigt[list(_REDUCED_COMPONENTS[check_dimension(dimension)])] = reduced
    return voigt


def voigt_to_reduced(voigt: np.ndarray, dimension: int) -> np.ndarray:
    """Gather the components of a Voigt vector that act in the given dimension."""
    return np.asarray(voigt)[list(_REDUCED_COMPONENTS[check_dimension(dimension)])]


def volumetric(voigt: np.ndarray) -> float:
    """Trace of a Voigt strain (sum of the three normal components)."""
    return float(voigt[0] + voigt[1] + voigt[2])


def mean_stress(voigt: np.ndarray) -> float:
    return volumetric(voigt) / 3.0


def compute_bmatrix(dn_dx: np.ndarray) -> np.ndarray:
    """
    Build the strain-displacement matrices for every node

    Args:
        dn_dx: (n_nodes, dim) shape function gradients in global coordinates

    Returns:
        bmatrix: (n_nodes, n_strain, dim), n_strain = 3 in 2D and 6 in 3D
    """
    n_nodes, dimension = dn_dx.shape
    check_dimension(dimension)
    dx = dn_dx[:, 0]
    dy = dn_dx[:, 1]
    if dimension == 2:
        bmatrix = np.zeros((n_nodes, 3, 2))
        bmatrix[:, 0, 0] = dx
        bmatrix[:, 1, 1] = dy
        bmatrix[:, 2, 0] = dy
        bmatrix[:, 2, 1] = dx
        return bmatrix

    dz = dn_dx[:, 2]
    bmatrix = np.zeros((n_nodes, 6, 3))
    bmatrix[:, 0, 0] = dx
    bmatrix[:, 1, 1] = dy
    bmatrix[:, 2, 2] = dz
    # xy
    bmatrix[:, 3, 0] = dy
    bmatrix[:, 3, 1] = dx
    # yz
    bmatrix[:, 4, 1] = dz
    bmatrix[:, 4, 2] = dy
    # xz
    bmatrix[:, 5, 0] = dz
    bmatrix[:, 5, 2] = dx
    return bmatrix
