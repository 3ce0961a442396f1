"""Model loaders that build a Graph from a serialized format."""

from .base import Parser
from .onnx import OnnxParser

__all__ = ["Parser", "OnnxParser"]
