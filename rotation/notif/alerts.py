"""
Alerts raised on recorded phase transitions.

The alert row is written synchronously; the Telegram message is sent in a
background task so a slow or failing Telegram API never delays the
transition check.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Set

from loguru import logger

from rotation.domain import AllocationRecommendation, MetricsSnapshot, PhaseTransitionRecord
from rotation.notif.formatter import format_phase
from rotation.notif.templates import template_phase_transition
from rotation.storage.repo import Repository
from rotation.telegram_bot import send_message_async

PHASE_TRANSITION = "PHASE_TRANSITION"

Sender = Callable[[str], Awaitable[bool]]


class AlertNotifier:

    def __init__(self, repo: Repository, sender: Sender = send_message_async,
                 app_name: str = "Crypto Rotation", send_timeout: float = 30.0):
        self.repo = repo
        self.sender = sender
        self.app_name = app_name
        self.send_timeout = send_timeout
        self._pending: Set[asyncio.Task] = set()

    def notify_transition(
        self,
        record: PhaseTransitionRecord,
        snapshot: MetricsSnapshot,
        threshold_value: float,
        allocation: Optional[AllocationRecommendation] = None
    ) -> int:
        """
        Store a PHASE_TRANSITION alert and dispatch the Telegram message.

        Returns:
            Id of the alert row
        """
        alert_id = self.repo.create_alert(
            alert_type=PHASE_TRANSITION,
            phase=record.to_phase,
            message=f"Phase transition from {record.from_phase.value} to {record.to_phase.value}",
            trigger_value=snapshot.btc_dominance,
            threshold_value=threshold_value,
            created_at=record.timestamp,
        )

        text = template_phase_transition(record, snapshot, allocation, app_name=self.app_name)
        task = asyncio.ensure_future(self._send(text, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return alert_id

    async def _send(self, text: str, record: PhaseTransitionRecord) -> None:
        label = f"{format_phase(record.from_phase)} -> {format_phase(record.to_phase)}"
        try:
            ok = await asyncio.wait_for(self.sender(text), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Transition alert {label} not sent: Telegram timed out after {self.send_timeout}s")
            return
        if ok:
            logger.info(f"Transition alert sent: {label}")
        else:
            logger.error(f"Transition alert {label} could not be delivered")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight messages (shutdown); cancel what is left after `timeout`."""
        if not self._pending:
            return
        tasks = list(self._pending)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.warning(f"Cancelled {len(not_done)} undelivered alert message(s) on shutdown")
