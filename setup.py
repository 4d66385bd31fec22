from __future__ import annotations

from setuptools import find_namespace_packages, setup


setup(
    name="cthyb-trace",
    version="0.1.0",
    description="Atomic trace evaluation with bound-based block pruning for CT-HYB quantum Monte Carlo",
    python_requires=">=3.9",
    packages=find_namespace_packages(include=["cthyb_trace", "cthyb_trace.*"]),
    install_requires=[
        "numpy>=1.22",
        "scipy>=1.8",
    ],
    extras_require={
        "numba": ["numba>=0.56"],
        "test": ["pytest>=7"],
    },
)
