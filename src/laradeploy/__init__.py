"""
LaraDeploy - Multi-application Laravel release orchestrator
"""

__version__ = "5.0.0"
__author__ = "Nasrul"

from .core import LaraDeploy
from .errors import DeployError

__all__ = ["LaraDeploy", "DeployError"]
