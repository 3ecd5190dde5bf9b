#!/usr/bin/env python3
"""
Thin Cache Setup Script
=======================
Allows installation of the thin-cache package.

Usage:
    pip install -e .           # Development install
    pip install -e ".[test]"   # With test dependencies
    pip install .              # Regular install
"""

from setuptools import setup, find_packages

setup(
    name="thin-cache",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "thincache-node=thincache.server:main",
        ],
    },
)
