"""
Constitutive model tests: Bingham stress update branches, configuration and capabilities

Run with: pytest mpmcore/tests/test_materials.py -v
"""
import dataclasses
import math

import numpy as np
import pytest

from mpmcore.materials import (
    CRITICAL_SHEAR_RATE_FLOOR,
    BinghamMaterial,
    LinearElasticMaterial,
    create_material,
)
from mpmcore.exceptions import (
    ConfigurationError,
    MaterialError,
    UnsupportedDimensionError,
    UnsupportedOperationError,
)
from mpmcore.tests.conftest import BINGHAM_PARAMETERS, StrainRateContext


def reference_bingham(params, stress, dstrain, strain_rate, dimension):
    """Step-by-step Bingham update used as the expected value"""
    E = params['youngs_modulus']
    nu = params['poisson_ratio']
    K = E / (3.0 * (1.0 - 2.0 * nu))
    pressure = (stress[0] + stress[1] + stress[2]) / 3.0 + K * (dstrain[0] + dstrain[1] + dstrain[2])
    critical = max(params['critical_shear_rate'], 1e-15)
    gamma = 2.0 * sum(r * r for r in strain_rate)
    modulus = 0.0
    if gamma > critical ** 2:
        modulus = 2.0 * (params['tau0'] / math.sqrt(gamma) + params['mu'])
    tau = [modulus * r for r in strain_rate]
    if sum(t * t for t in tau) < 2.0 * params['tau0'] ** 2:
        tau = [0.0] * 6
    if dimension == 3:
        return np.array([pressure + tau[0], pressure + tau[1], pressure + tau[2], tau[3], tau[4], tau[5]])
    return np.array([pressure + tau[0], pressure + tau[1], 0.0, tau[3], 0.0, 0.0])


class TestBinghamConfiguration:
    """configure() validation"""

    def test_configure_sets_parameters(self, bingham3d):
        assert bingham3d.is_configured
        assert bingham3d.property('density') == 1000.0
        assert bingham3d.params.tau0 == 200.0
        assert bingham3d.params.bulk_modulus == pytest.approx(1.0e7 / 1.2)

    @pytest.mark.parametrize("key", sorted(BINGHAM_PARAMETERS))
    def test_missing_key_is_named(self, key):
        params = dict(BINGHAM_PARAMETERS)
        del params[key]
        material = BinghamMaterial(0, 3)
        with pytest.raises(ConfigurationError, match=key):
            material.configure(params)
        assert not material.is_configured

    @pytest.mark.parametrize("value", ["200", None, True, [1.0]])
    def test_mistyped_value_is_named(self, value):
        params = dict(BINGHAM_PARAMETERS, tau0=value)
        material = BinghamMaterial(0, 3)
        with pytest.raises(ConfigurationError, match="tau0"):
            material.configure(params)
        assert not material.is_configured

    def test_integer_values_accepted(self):
        params = dict(BINGHAM_PARAMETERS, density=1000, tau0=0)
        material = BinghamMaterial(0, 3)
        material.configure(params)
        assert material.params.density == 1000.0

    @pytest.mark.parametrize("key,value", [
        ('density', 0.0),
        ('youngs_modulus', -1.0),
        ('poisson_ratio', 0.5),
        ('tau0', -1.0),
        ('critical_shear_rate', -1e-3),
    ])
    def test_out_of_range_rejected(self, key, value):
        material = BinghamMaterial(0, 3)
        with pytest.raises(ConfigurationError, match=key):
            material.configure(dict(BINGHAM_PARAMETERS, **{key: value}))
        assert not material.is_configured

    def test_parameters_are_immutable(self, bingham3d):
        with pytest.raises(ConfigurationError):
            bingham3d.configure(BINGHAM_PARAMETERS)
        with pytest.raises(dataclasses.FrozenInstanceError):
            bingham3d.params.tau0 = 0.0

    def test_unconfigured_material_cannot_compute_stress(self):
        material = BinghamMaterial(0, 3)
        context = StrainRateContext(np.zeros(6))
        with pytest.raises(ConfigurationError):
            material.compute_stress(np.zeros(6), np.zeros(6), context)


class TestBinghamCapabilities:
    """Operations outside the Bingham capability set"""

    def test_capabilities(self, bingham3d):
        assert bingham3d.supports("context_stress")
        assert not bingham3d.supports("stress")
        assert not bingham3d.supports("elastic_tensor")
        assert bingham3d.requires_context

    def test_elastic_tensor_unsupported(self, bingham3d):
        with pytest.raises(UnsupportedOperationError):
            bingham3d.elastic_tensor()

    def test_context_free_stress_unsupported(self, bingham3d):
        with pytest.raises(UnsupportedOperationError):
            bingham3d.compute_stress(np.zeros(6), np.zeros(6))


class TestBinghamStress:
    """Bingham stress update branches"""

    def test_zero_strain_rate_gives_pressure_only(self, bingham3d):
        stress = np.array([-1000.0, -2000.0, -3000.0, 50.0, 20.0, 10.0])
        dstrain = np.array([1e-4, 0.0, 0.0, 0.0, 0.0, 0.0])
        result = bingham3d.compute_stress(stress, dstrain, StrainRateContext(np.zeros(6)))

        pressure = -2000.0 + 1.0e7 / 1.2 * 1e-4
        np.testing.assert_allclose(result, pressure * np.array([1, 1, 1, 0, 0, 0]))

    def test_all_zero_inputs(self, bingham3d, bingham2d):
        for material in (bingham3d, bingham2d):
            result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(np.zeros(6)))
            assert result.shape == (6,)
            np.testing.assert_array_equal(result, np.zeros(6))

    def test_yield_boundary_is_unyielded(self):
        # gamma = 2 * (0.5^2 + 0.5^2) = 1.0 = critical^2
        params = dict(BINGHAM_PARAMETERS, tau0=0.0, mu=10.0, critical_shear_rate=1.0)
        material = BinghamMaterial(0, 3)
        material.configure(params)
        strain_rate = np.array([0.5, 0.5, 0.0, 0.0, 0.0, 0.0])
        assert 2.0 * strain_rate @ strain_rate == material.params.critical_shear_rate ** 2

        result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(strain_rate))
        np.testing.assert_array_equal(result, np.zeros(6))

    def test_yielded_branch_above_boundary(self):
        params = dict(BINGHAM_PARAMETERS, tau0=0.0, mu=10.0, critical_shear_rate=0.1)
        material = BinghamMaterial(0, 3)
        material.configure(params)
        strain_rate = np.array([0.5, 0.0, 0.0, 0.2, 0.0, 0.0])

        result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(strain_rate))
        # tau0 = 0: modulus = 2 mu
        np.testing.assert_allclose(result, 20.0 * strain_rate)

    def test_von_mises_regularization(self):
        # Above the critical shear rate tau.tau = 2 (tau0 + mu sqrt(gamma))^2, which is at
        # least 2 tau0^2 for any mu >= 0. Only a negative mu reaches the zeroing branch.
        params = dict(BINGHAM_PARAMETERS, mu=-1.0)
        material = BinghamMaterial(0, 3)
        material.configure(params)
        strain_rate = np.array([0.01, 0.01, 0.01, 0.0, 0.0, 0.0])

        gamma = 2.0 * strain_rate @ strain_rate
        modulus = 2.0 * (200.0 / math.sqrt(gamma) - 1.0)
        assert modulus > 0.0
        invariant2 = (modulus * strain_rate) @ (modulus * strain_rate)
        assert invariant2 < 2.0 * 200.0 ** 2

        result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(strain_rate))
        np.testing.assert_array_equal(result, np.zeros(6))

    def test_end_to_end_near_regularization_boundary(self, bingham3d):
        stress = np.array([-1000.0, -1000.0, -1000.0, 0.0, 0.0, 0.0])
        dstrain = np.array([1e-4, 1e-4, 1e-4, 0.0, 0.0, 0.0])
        strain_rate = np.array([0.01, 0.01, 0.01, 0.0, 0.0, 0.0])

        K = 1.0e7 / (3.0 * (1.0 - 2.0 * 0.3))
        assert K == pytest.approx(8.333333e6, rel=1e-6)
        pressure_increment = K * 3e-4
        assert pressure_increment == pytest.approx(2500.0)
        pressure_new = -1000.0 + pressure_increment

        gamma = 2.0 * strain_rate @ strain_rate
        assert gamma == pytest.approx(6e-4)
        assert gamma > 1e-3 ** 2
        modulus = 2.0 * (200.0 / math.sqrt(gamma) + 1.0)
        assert modulus == pytest.approx(16331.93, rel=1e-6)
        tau = modulus * strain_rate
        invariant2 = tau @ tau

        expected = pressure_new * np.array([1, 1, 1, 0, 0, 0], dtype=float)
        if invariant2 >= 2.0 * 200.0 ** 2:
            expected = expected + tau

        result = bingham3d.compute_stress(stress, dstrain, StrainRateContext(strain_rate))
        np.testing.assert_allclose(result, expected, rtol=1e-12)
        np.testing.assert_allclose(
            result, reference_bingham(BINGHAM_PARAMETERS, stress, dstrain, strain_rate, 3), rtol=1e-12
        )

    def test_2d_assembly(self, bingham2d):
        stress = np.array([-500.0, -700.0, 0.0, 30.0, 0.0, 0.0])
        dstrain = np.array([2e-5, -1e-5, 0.0, 4e-5, 0.0, 0.0])
        strain_rate = np.array([20.0, -10.0, 0.0, 40.0, 0.0, 0.0])

        result = bingham2d.compute_stress(stress, dstrain, StrainRateContext(strain_rate))
        expected = reference_bingham(BINGHAM_PARAMETERS, stress, dstrain, strain_rate, 2)
        np.testing.assert_allclose(result, expected, rtol=1e-12)
        assert result[2] == 0.0 and result[4] == 0.0 and result[5] == 0.0
        # Yielded: shear component carries tau
        assert result[3] != 0.0

    def test_critical_shear_rate_floor(self):
        params = dict(BINGHAM_PARAMETERS, tau0=0.0, critical_shear_rate=0.0)
        material = BinghamMaterial(0, 3)
        material.configure(params)
        strain_rate = np.array([1e-15, 0.0, 0.0, 0.0, 0.0, 0.0])
        result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(strain_rate))
        assert 2.0 * strain_rate @ strain_rate > CRITICAL_SHEAR_RATE_FLOOR ** 2
        np.testing.assert_allclose(result, 2.0 * strain_rate)

        # Below the floor the material stays rigid
        tiny = np.array([1e-16, 0.0, 0.0, 0.0, 0.0, 0.0])
        result = material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(tiny))
        np.testing.assert_array_equal(result, np.zeros(6))

    @pytest.mark.parametrize("dimension", [1, 4])
    def test_unsupported_dimension(self, dimension, bingham_parameters):
        material = BinghamMaterial(0, dimension)
        material.configure(bingham_parameters)
        with pytest.raises(UnsupportedDimensionError):
            material.compute_stress(np.zeros(6), np.zeros(6), StrainRateContext(np.full(6, 0.1)))

    def test_inputs_not_modified(self, bingham3d):
        stress = np.array([-1000.0, -1000.0, -1000.0, 0.0, 0.0, 0.0])
        dstrain = np.full(6, 1e-4)
        snapshot = stress.copy(), dstrain.copy()
        bingham3d.compute_stress(stress, dstrain, StrainRateContext(np.full(6, 0.05)))
        np.testing.assert_array_equal(stress, snapshot[0])
        np.testing.assert_array_equal(dstrain, snapshot[1])


class TestLinearElastic:
    """Linear elastic variant of the capability interface"""

    def test_capabilities(self, elastic2d):
        assert elastic2d.supports("elastic_tensor")
        assert elastic2d.supports("stress")
        assert elastic2d.supports("context_stress")
        assert not elastic2d.requires_context

    def test_elastic_tensor(self, elastic2d):
        de = elastic2d.elastic_tensor()
        E, nu = 1.0e6, 0.25
        G = E / (2 * (1 + nu))
        lam = E * nu / ((1 + nu) * (1 - 2 * nu))
        assert de.shape == (6, 6)
        np.testing.assert_allclose(de, de.T)
        assert de[0, 0] == pytest.approx(lam + 2 * G)
        assert de[0, 1] == pytest.approx(lam)
        assert de[3, 3] == pytest.approx(G)

    def test_stress_with_and_without_context(self, elastic2d):
        dstrain = np.array([1e-4, 0.0, 0.0, 2e-4, 0.0, 0.0])
        stress = np.array([10.0, 0.0, 0.0, 0.0, 0.0, 0.0])
        no_context = elastic2d.compute_stress(stress, dstrain)
        with_context = elastic2d.compute_stress(stress, dstrain, StrainRateContext(np.zeros(6)))
        np.testing.assert_allclose(no_context, with_context)
        np.testing.assert_allclose(no_context, stress + elastic2d.elastic_tensor() @ dstrain)

    def test_missing_key(self):
        material = LinearElasticMaterial(0, 2)
        with pytest.raises(ConfigurationError, match="poisson_ratio"):
            material.configure({'density': 1.0, 'youngs_modulus': 1.0})


class TestMaterialFactory:

    def test_create_bingham(self, bingham_parameters):
        material = create_material('Bingham', 3, 2, bingham_parameters)
        assert isinstance(material, BinghamMaterial)
        assert material.id == 3 and material.dimension == 2
        assert material.is_configured

    def test_create_unconfigured(self):
        material = create_material('LinearElastic', 0, 3)
        assert not material.is_configured

    def test_unknown_type(self):
        with pytest.raises(MaterialError, match="Unknown material type"):
            create_material('MohrCoulomb', 0, 3, {})

    def test_non_mapping_parameters(self):
        with pytest.raises(ConfigurationError):
            create_material('Bingham', 0, 3, [1.0, 2.0])
