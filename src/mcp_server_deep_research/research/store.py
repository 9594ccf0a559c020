"""In-memory registry of live research sessions."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from .machine import ResearchMachine
from .models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ResearchSession:
    """A research machine running in the background, addressable by run id."""

    run_id: str
    question: str
    machine: ResearchMachine
    created_at: datetime = field(default_factory=utc_now)
    task: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self.task is not None and not self.task.done()


class ResearchSessionRegistry:
    """Maps run ids to sessions so gate answers and stop requests reach the right run.

    Each server owns its own registry; runs in different sessions never share state.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ResearchSession] = {}

    def register(self, run_id: str, question: str, machine: ResearchMachine) -> ResearchSession:
        if run_id in self._sessions:
            raise ValueError(f"Run {run_id} is already registered")
        session = ResearchSession(run_id=run_id, question=question, machine=machine)
        self._sessions[run_id] = session
        logger.info(f"Registered research run {run_id}")
        return session

    def get(self, run_id: str) -> ResearchSession | None:
        return self._sessions.get(run_id)

    def list(self) -> list[ResearchSession]:
        return list(self._sessions.values())

    def remove(self, run_id: str) -> bool:
        return self._sessions.pop(run_id, None) is not None

    def respond(self, run_id: str, value: str) -> bool:
        """Answer the pending approval gate of a run. False if the run is unknown or not waiting."""
        session = self._sessions.get(run_id)
        if session is None:
            return False
        return session.machine.respond(value)

    def stop(self, run_id: str) -> bool:
        """Stop a run cooperatively. False if the run is unknown or not running."""
        session = self._sessions.get(run_id)
        if session is None:
            return False
        stopped = session.machine.stop()
        if stopped:
            logger.info(f"Stop requested for research run {run_id}")
        return stopped

    async def stop_all(self) -> None:
        """Stop every run and wait for their tasks to unwind."""
        tasks = []
        for session in self._sessions.values():
            session.machine.stop()
            if session.task is not None and not session.task.done():
                tasks.append(session.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
