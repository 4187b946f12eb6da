"""
Agent Loop

Dependency-aware batch scheduling of backlog items, a streaming bridge to
agent CLIs (cursor-agent, claude, gemini), and a file-backed iteration ledger
that feeds compressed history into the next prompt.
"""

__version__ = "0.1.0"

# Analysis and scheduling
from agentloop.analyzer import build_dependency_map, conflicts, extract_file_references
from agentloop.backlog import load_backlog, pending_items, save_backlog

# Agent bridge
from agentloop.bridge import AgentBridge

# Configuration
from agentloop.config import Settings, load_settings
from agentloop.errors import ConfigurationError, FailureKind, ProtocolParseError

# Ledger
from agentloop.ledger import IterationLedger, IterationStatistics, MemorySearch

# Loop
from agentloop.loop import AgentLoop, LoopReport

# Core models
from agentloop.models import (
    ExecutionResult,
    IterationRecord,
    IterationStatus,
    MemorySnippet,
    QualityChecks,
    StreamEvent,
    StreamEventType,
    ToolInfo,
    ToolKind,
    WorkItem,
)
from agentloop.quality import OutputQualityGate, QualityGate
from agentloop.scheduler import BatchPlan, partition_batches, plan_batches

__all__ = [
    # Version
    "__version__",
    # Models
    "WorkItem",
    "StreamEvent",
    "StreamEventType",
    "ExecutionResult",
    "ToolInfo",
    "ToolKind",
    "QualityChecks",
    "IterationRecord",
    "IterationStatus",
    "MemorySnippet",
    # Config
    "Settings",
    "load_settings",
    # Errors
    "ConfigurationError",
    "FailureKind",
    "ProtocolParseError",
    # Analysis and scheduling
    "build_dependency_map",
    "conflicts",
    "extract_file_references",
    "BatchPlan",
    "partition_batches",
    "plan_batches",
    "load_backlog",
    "pending_items",
    "save_backlog",
    # Bridge
    "AgentBridge",
    # Ledger
    "IterationLedger",
    "IterationStatistics",
    "MemorySearch",
    # Quality
    "QualityGate",
    "OutputQualityGate",
    # Loop
    "AgentLoop",
    "LoopReport",
]
