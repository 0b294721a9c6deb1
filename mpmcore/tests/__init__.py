"""
MPM Core Test Package

Contains unit tests and integration tests for particles, cells, materials and the solver.

Recommended test commands (run from the repository root):
    # Run all tests
    pytest mpmcore/tests/ -v

    # Run tests excluding slow ones
    pytest mpmcore/tests/ -v -m "not slow"

Note: test_kernels.py requires Taichi and is skipped automatically when
Taichi is not available.
"""
