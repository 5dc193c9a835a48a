# app/services/gate_dispatcher.py
"""
Gate Command Dispatcher.

Every open/deny decision becomes a GateCommand row (pending), is pushed to
the gate controller and waits a bounded time for the acknowledgement.
Unacknowledged commands are retried with exponential backoff; once retries
are exhausted the row is marked timed_out and GateUnresponsive is raised so
the engine can call for attended assistance. Nothing is dropped silently.

The actuator is not assumed to de-duplicate: the dispatcher sends exactly
what it is asked to, and the Session Manager only asks once per transition.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import httpx

from app.config import settings
from app.errors import GateUnresponsive
from app.models.gate_command import GateCommand, GateCommandStatus
from app.utils.keyed_lock import KeyedLock
from app.utils.logger import get_logger
from app.utils.timeutils import utcnow

logger = get_logger(__name__)


class GateChannelError(Exception):
    """The controller could not be reached or refused the command."""


@dataclass(frozen=True)
class GateCommandMessage:
    command_id: int
    gate: str
    direction: str
    action: str
    attempt: int
    session_id: Optional[int] = None


@dataclass(frozen=True)
class GateCommandResult:
    command_id: int
    gate: str
    direction: str
    action: str
    status: str
    attempts: int


class HttpGateChannel:
    """Pushes commands to the gate controller's HTTP API. A 2xx answer is the ack."""

    def __init__(self, gates: dict = None):
        self.gates = gates if gates is not None else settings.GATES

    async def deliver(self, message: GateCommandMessage) -> None:
        gate = self.gates.get(message.gate)
        if gate is None:
            raise GateChannelError(f"no controller configured for gate {message.gate}")
        url = f"http://{gate['ip']}:{gate.get('port', 80)}/api/gate/command"
        payload = {
            "command_id": message.command_id,
            "direction": message.direction,
            "action": message.action,
            "attempt": message.attempt,
        }
        try:
            # The dispatcher enforces the ack deadline; no client-side timeout here
            async with httpx.AsyncClient(timeout=None) as client:
                response = await client.post(url, json=payload)
        except httpx.TransportError as e:
            raise GateChannelError(f"{message.gate} unreachable: {e}")
        if response.status_code >= 300:
            raise GateChannelError(f"{message.gate} answered HTTP {response.status_code}")


class GateCommandDispatcher:
    def __init__(self, session_factory, channel, ack_timeout: float = None, max_retries: int = None,
                 backoff_seconds: float = None, backoff_max_seconds: float = None):
        self._session_factory = session_factory
        self._channel = channel
        self.ack_timeout = settings.GATE_ACK_TIMEOUT_SECONDS if ack_timeout is None else ack_timeout
        self.max_retries = settings.GATE_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.GATE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = (
            settings.GATE_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )
        self._locks = KeyedLock()

    async def send(self, gate: str, direction: str, action: str,
                   session_id: Optional[int] = None) -> GateCommandResult:
        command_id = self._enqueue(gate, direction, action, session_id)
        logger.info(f"[GATE] #{command_id} {action} → {gate}/{direction} (session {session_id})")

        last_error = None
        attempts = 0
        async with self._locks.hold((gate, direction)):
            for attempt in range(1, self.max_retries + 2):
                attempts = attempt
                self._update(command_id, attempts=attempt)
                message = GateCommandMessage(command_id, gate, direction, action, attempt, session_id)
                try:
                    await asyncio.wait_for(self._channel.deliver(message), timeout=self.ack_timeout)
                except asyncio.TimeoutError:
                    last_error = f"no ack within {self.ack_timeout}s"
                except GateChannelError as e:
                    last_error = str(e)
                else:
                    self._update(command_id, status=GateCommandStatus.ACKED.value, acked_at=utcnow(), last_error=None)
                    logger.info(f"[GATE] #{command_id} acked by {gate} (attempt {attempt})")
                    return GateCommandResult(command_id, gate, direction, action,
                                             GateCommandStatus.ACKED.value, attempt)

                logger.warning(f"[GATE] #{command_id} {gate}/{direction} attempt {attempt} failed: {last_error}")
                if attempt <= self.max_retries:
                    await asyncio.sleep(min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds))

        self._update(command_id, status=GateCommandStatus.TIMED_OUT.value, last_error=last_error)
        logger.error(f"[GATE] #{command_id} {action} → {gate}/{direction} gave up after {attempts} attempts")
        raise GateUnresponsive(gate, direction, action, attempts, command_id)

    def list_commands(self, gate: Optional[str] = None, status: Optional[str] = None,
                      limit: int = 50) -> List[GateCommand]:
        db = self._session_factory()
        try:
            q = db.query(GateCommand)
            if gate:
                q = q.filter(GateCommand.gate == gate)
            if status:
                q = q.filter(GateCommand.status == status)
            return q.order_by(GateCommand.id.desc()).limit(limit).all()
        finally:
            db.close()

    def _enqueue(self, gate: str, direction: str, action: str, session_id: Optional[int]) -> int:
        db = self._session_factory()
        try:
            now = utcnow()
            command = GateCommand(
                gate=gate, direction=direction, action=action, session_id=session_id,
                status=GateCommandStatus.PENDING.value, attempts=0, created_at=now, updated_at=now,
            )
            db.add(command)
            db.commit()
            return command.id
        finally:
            db.close()

    def _update(self, command_id: int, **values):
        db = self._session_factory()
        try:
            command = db.get(GateCommand, command_id)
            for field, value in values.items():
                setattr(command, field, value)
            command.updated_at = utcnow()
            db.commit()
        finally:
            db.close()
