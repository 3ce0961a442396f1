"""Execution plans: scheduling and evaluation of a graph."""

from .plan import Plan, RunResult, RunStats

__all__ = ["Plan", "RunResult", "RunStats"]
