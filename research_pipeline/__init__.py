"""Agentic research orchestration pipeline.

Turns a free-text request into a structured research deliverable by driving
completion providers and research providers through a fixed sequence of
phases while streaming progress and metering credits.
"""

__version__ = "0.1.0"
