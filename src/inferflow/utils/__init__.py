"""Utility helpers for logging, configuration, and common routines."""

from .config import AnalyserConfig, PlanConfig
from .logger import get_logger

__all__ = ["get_logger", "AnalyserConfig", "PlanConfig"]
