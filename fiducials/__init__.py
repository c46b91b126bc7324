"""Fiducial marker detection and pose publishing."""

from .config import FiducialsConfig, load_config
from .node import FiducialsNode
from .pipeline import DetectionPipeline

__all__ = ["DetectionPipeline", "FiducialsConfig", "FiducialsNode", "load_config"]
