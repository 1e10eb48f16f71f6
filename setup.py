#!/usr/bin/env python3
"""
btrfs-recovery - Setup Configuration
Installs the btrfs_recovery package and the btrfs-recovery command
"""

from setuptools import setup, find_packages
from pathlib import Path

requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_file.exists():
    with open(requirements_file) as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith('#')
        ]

setup(
    name="btrfs-recovery",
    version="1.0.0",
    description="Forensic repair of corrupted btrfs metadata blocks",
    license="MIT",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        'dev': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'btrfs-recovery=btrfs_recovery.ui.cli:main',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX :: Linux",
        "Topic :: System :: Filesystems",
    ],
)
