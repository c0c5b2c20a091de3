"""
Base Agent class and Orchestrator
Niche Radar: Clustering & Scoring Engine
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Dict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import traceback
import time

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _size(data: Any) -> Optional[int]:
    if isinstance(data, (list, tuple, dict)):
        return len(data)
    return None


@dataclass
class AgentResult:
    """Standardized result envelope returned by every stage."""
    agent_name: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def __repr__(self):
        status = "✅" if self.success else "❌"
        dur = f" ({self.duration_seconds:.2f}s)" if self.duration_seconds else ""
        items = self.metadata.get("output_size")
        count = f" [{items} items]" if items is not None else ""
        return f"{status} {self.agent_name}{count}{dur}"


class Agent(ABC):
    """
    Abstract base class for the analysis stages.
    Subclasses implement `run(data)`; callers use `execute(data)`.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"agent.{name}")

    @abstractmethod
    def run(self, data: Any) -> Any:
        raise NotImplementedError

    def execute(self, data: Any) -> AgentResult:
        """
        Wraps `run()` with timing, logging and error capture.
        """
        started_at = _now()
        self.logger.info(f"[{self.name}] Starting ({_size(data) or 0} inputs)...")
        try:
            result = self.run(data)
        except Exception as e:
            finished_at = _now()
            self.logger.error(f"[{self.name}] Failed: {e}\n{traceback.format_exc()}")
            return AgentResult(
                agent_name=self.name,
                success=False,
                error=str(e),
                started_at=started_at,
                finished_at=finished_at,
            )

        finished_at = _now()
        duration = (finished_at - started_at).total_seconds()
        self.logger.info(f"[{self.name}] Completed in {duration:.2f}s")
        return AgentResult(
            agent_name=self.name,
            success=True,
            data=result,
            metadata={"input_size": _size(data), "output_size": _size(result)},
            started_at=started_at,
            finished_at=finished_at,
        )

    def __repr__(self):
        return f"<Agent: {self.name}>"


class Orchestrator:
    """
    Sequential pipeline orchestrator.
    Each agent's output becomes the next agent's input.
    """

    def __init__(self, agents: List[Agent], stop_on_failure: bool = True):
        self.agents = agents
        self.stop_on_failure = stop_on_failure
        self.logger = logging.getLogger("orchestrator")
        self.run_history: List[AgentResult] = []

    def execute(self, input_data: Any) -> AgentResult:
        """Execute every stage and return the last successful AgentResult."""
        self.run_history.clear()
        data = input_data
        total_start = time.time()

        self.logger.info(f"Orchestrator starting: {len(self.agents)} stages")

        for i, agent in enumerate(self.agents, 1):
            self.logger.info(f"  [{i}/{len(self.agents)}] {agent.name}")
            result = agent.execute(data)
            self.run_history.append(result)

            if not result.success:
                self.logger.error(f"  '{agent.name}' failed: {result.error}")
                if self.stop_on_failure:
                    return result
            else:
                data = result.data

        elapsed = time.time() - total_start
        successes = sum(1 for r in self.run_history if r.success)
        self.logger.info(
            f"Pipeline complete: {successes}/{len(self.agents)} succeeded "
            f"in {elapsed:.2f}s"
        )

        for result in reversed(self.run_history):
            if result.success:
                return result
        if self.run_history:
            return self.run_history[-1]
        return AgentResult(agent_name="orchestrator", success=True, data=input_data)

    def summary(self) -> str:
        lines = ["Pipeline Summary:"]
        for r in self.run_history:
            lines.append(f"  {r}")
        return "\n".join(lines)
