from setuptools import setup, find_packages

setup(
    name="mpmcore",
    version="0.1.0",
    description="Explicit Material Point Method core with Bingham viscoplastic materials",
    packages=find_packages(include=['mpmcore', 'mpmcore.*']),
    classifiers = [
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
    ],
    entry_points={
        'console_scripts': [
            'mpmcore = mpmcore.cli:main',
        ],
    },
    install_requires=[
        'numpy',
        'pyyaml',
        'taichi',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
