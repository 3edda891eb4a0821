"""
Dependency Audit Tool

A tool for auditing the age, recommended upgrades, obsolescence and known
vulnerabilities of the packages in a Python requirements manifest.
"""

__version__ = "0.1.0"

from .cli import main

__all__ = ["main"]
