"""
Setup for the fleet safety monitor.
"""
from setuptools import setup, find_packages

setup(
    name="fleet-safety",
    version="0.1.0",
    author="Fleet Safety Team",
    description="Priority-ordered liveness monitor and authority arbiter for a fleet of control nodes",
    packages=find_packages(include=["fleet_safety", "fleet_safety.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering",
    ],
    python_requires=">=3.9",
    install_requires=[
        "pyyaml>=6.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "dev": [
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleet-safety=fleet_safety.cli:main",
        ],
    },
)
