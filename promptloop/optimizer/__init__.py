"""
Autonomous prompt optimization for PromptLoop.

This package decides when a prompt needs work, generates and scores rewrites,
and lands the best one through a guarded feedback, implementation, QA and
evaluation pipeline with automatic rollback.

Key Components:
- AutonomousOptimizer: Entry point; sessions, policies, approvals
- DecisionEngine: Policy-driven decision whether to optimize
- CandidateGenerator / CandidateEvaluator: Strategy rewrites and panel scoring
- TaskOrchestrator: The four-stage pipeline with retries and rollback rules
- CommitManager: Backups, atomic application, restore and commit
- ContinuousMonitor: Periodic optimization of configured targets
"""

from promptloop.optimizer.candidates import CandidateEvaluator, CandidateGenerator
from promptloop.optimizer.commit_manager import CommitManager
from promptloop.optimizer.config import PipelineConfig
from promptloop.optimizer.core import AutonomousOptimizer, SessionResult
from promptloop.optimizer.decision import DecisionEngine
from promptloop.optimizer.monitor import ContinuousMonitor, MonitorTarget
from promptloop.optimizer.orchestrator import TaskOrchestrator
from promptloop.optimizer.safety import DEFAULT_GUARDS

__all__ = [
    "AutonomousOptimizer",
    "SessionResult",
    "DecisionEngine",
    "CandidateGenerator",
    "CandidateEvaluator",
    "TaskOrchestrator",
    "CommitManager",
    "ContinuousMonitor",
    "MonitorTarget",
    "PipelineConfig",
    "DEFAULT_GUARDS",
]
