"""Streaming generation over the shared models."""

from livetalk.pipeline.stream import GenerationStats, OutputStream
from livetalk.pipeline.orchestrator import LiveTalkOrchestrator

__all__ = ["GenerationStats", "OutputStream", "LiveTalkOrchestrator"]
