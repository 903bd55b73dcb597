# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for modpkg, the mod package manager
"""

from setuptools import setup, find_packages

setup(
    name="modpkg",
    version="1.0.0",
    description="Package manager for game mods: semver resolution, installed-file tracking, safe upgrades",
    author="Jason Cafarelli",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0.0",
        "httpx>=0.24.0",
        "PyYAML>=6.0",
        "semantic-version>=2.10.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
)
