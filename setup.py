#!/usr/bin/env python3
"""
setup.py compatibility wrapper for tools that still expect one.

pgmgr is built from pyproject.toml with hatchling as the build backend.
For normal installation, use:
    pip install .
"""

from setuptools import setup

# setuptools picks up the project metadata from pyproject.toml
setup()
